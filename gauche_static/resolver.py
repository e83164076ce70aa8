"""Load-file resolution policy of the generated executable.

The generated program replaces Gauche's ``Scm_FindFile`` with a function that
first consults the table of native extensions baked into the image and only
then falls back to the usual ``*load-path*`` search. :func:`resolve` is the
reference model of that C function; the two must stay in step.
"""

import os
from typing import Callable, Sequence


class ResolveError(LookupError):
    """Raised when a non-quiet lookup finds nothing."""


def match_native_extension(
    name: str,
    suffixes: Sequence[str],
    table: Sequence[str],
) -> str | None:
    """Find the baked-in extension a load request refers to.

    A request ``name`` matches an entry that equals ``name + suffix`` or ends
    with ``"/" + name + suffix``, trying the bare name first and then each
    suffix in order.

    :param name: Requested file name as passed to the loader.
    :param suffixes: Suffixes the loader would try.
    :param table: Native extension paths.
    :returns: The first matching entry, or ``None``.
    """

    for entry in table:
        for suffix in ("", *suffixes):
            tail: str = name + suffix
            if entry == tail or entry.endswith("/" + tail) is True:
                return entry
    return None


def resolve(
    name: str,
    search_paths: Sequence[str],
    suffixes: Sequence[str],
    *,
    quiet: bool,
    native_extensions: Sequence[str] = (),
    is_file: Callable[[str], bool] = os.path.isfile,
    expanduser: Callable[[str], str] = os.path.expanduser,
) -> str | None:
    """Resolve a load request the way the generated executable does.

    :param name: Requested file name.
    :param search_paths: ``*load-path*`` entries, tried in order.
    :param suffixes: Suffixes tried after the bare candidate.
    :param quiet: Return ``None`` instead of raising on a miss.
    :param native_extensions: Paths that count as present without a lookup.
    :param is_file: Filesystem probe.
    :param expanduser: Home-directory expansion for ``~`` names.
    :returns: The resolved path, or ``None`` on a quiet miss.
    :raises ResolveError: On an empty name, or on a miss when not quiet.
    """

    if name == "":
        raise ResolveError("bad filename to load")

    hit: str | None = match_native_extension(name, suffixes, native_extensions)
    if hit is not None:
        return hit

    bases: list[str]
    if name.startswith("~") is True:
        bases = [expanduser(name)]
    elif name.startswith("/") is True or name.startswith("./") is True or name.startswith("../") is True:
        bases = [name]
    else:
        bases = [f"{p}/{name}" for p in search_paths]

    for base in bases:
        found: str | None = _try_suffixes(base, suffixes, is_file)
        if found is not None:
            return found

    if quiet is True:
        return None
    raise ResolveError(f"cannot find file {name!r} in *load-path* {list(search_paths)!r}")


def _try_suffixes(base: str, suffixes: Sequence[str], is_file: Callable[[str], bool]) -> str | None:
    """Probe ``base`` as-is, then ``base`` with each suffix.

    :param base: Candidate path without suffix.
    :param suffixes: Suffixes to append.
    :param is_file: Filesystem probe.
    :returns: The first existing candidate, or ``None``.
    """

    if is_file(base) is True:
        return base
    for suffix in suffixes:
        candidate: str = base + suffix
        if is_file(candidate) is True:
            return candidate
    return None
