"""gauche-static.

A small build utility that turns a Gauche script, every module it loads and
every native extension it links into a single statically imaged executable.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
