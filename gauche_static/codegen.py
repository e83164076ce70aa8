"""C program generator.

The generated translation unit embeds every traced module as a C string
literal, loads them into the ``user`` module in dependency-safe order and then
hands control to the script's ``main``. It also replaces libgauche's
``Scm_FindFile`` so that the native extensions preloaded into the image are
found without touching the filesystem (see :mod:`gauche_static.resolver` for
the policy it implements).
"""

import logging
import pathlib
import re
import textwrap
from typing import Callable, Sequence


class ModuleReadError(RuntimeError):
    """Raised when a traced module cannot be read for embedding."""


_ESCAPES: dict[str, str] = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
}
_ESCAPE_TABLE: dict[int, str] = str.maketrans(_ESCAPES)
_UNESCAPES: dict[str, str] = {v[1]: k for k, v in _ESCAPES.items()}
_UNESCAPE_RE: re.Pattern[str] = re.compile(r"\\(.)", re.DOTALL)


def escape_literal(text: str) -> str:
    """Escape text for use inside a double-quoted C string literal.

    :param text: Raw text.
    :returns: Literal body (without the surrounding quotes).
    """

    return text.translate(_ESCAPE_TABLE)


def unescape_literal(literal: str) -> str:
    """Invert :func:`escape_literal`.

    :param literal: Literal body produced by :func:`escape_literal`.
    :returns: Original text.
    :raises ValueError: On an escape sequence :func:`escape_literal` never emits.
    """

    def repl(m: re.Match[str]) -> str:
        ch: str = m.group(1)
        if ch not in _UNESCAPES:
            raise ValueError(f"Unsupported escape sequence: \\{ch}")
        return _UNESCAPES[ch]

    return _UNESCAPE_RE.sub(repl, literal)


def read_module(identifier: str) -> str:
    """Read a traced module's source text.

    :param identifier: Module path from the trace.
    :returns: Full file content.
    :raises ModuleReadError: If the file cannot be read or decoded.
    """

    try:
        return pathlib.Path(identifier).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ModuleReadError(f"Cannot read module {identifier}: {e}") from e


def generate_program(
    order: Sequence[str],
    natives: Sequence[str],
    *,
    reader: Callable[[str], str] = read_module,
    logger: logging.Logger | None = None,
) -> str:
    """Render the C source of the executable.

    :param order: Module identifiers in dependency-safe order.
    :param natives: Native extension paths in discovery order.
    :param reader: Returns a module's text given its identifier.
    :param logger: Optional logger for debug output.
    :returns: C source code.
    :raises ModuleReadError: If a module cannot be read.
    """

    if logger is None:
        logger = logging.getLogger("gauche_static")

    table_lines: list[str] = []
    for path in natives:
        table_lines.append(f'    "{escape_literal(path)}",')

    load_lines: list[str] = []
    embedded_chars: int = 0
    for identifier in order:
        text: str = reader(identifier)
        embedded_chars += len(text)
        load_lines.append(
            f'    if (!load_embedded("{escape_literal(identifier)}", "{escape_literal(text)}")) return FALSE;'
        )
        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"gauche-static: embedded {identifier} ({len(text)} chars)")

    logger.info(
        f"gauche-static: generated program embeds {len(order)} modules "
        f"({embedded_chars / 1024:.1f} KiB) and {len(natives)} native extensions"
    )

    program: str = _PROGRAM_TEMPLATE
    program = program.replace("__GSTATIC_MODULE_COUNT__", str(len(order)))
    program = program.replace("__GSTATIC_NATIVE_TABLE__\n", "".join(f"{ln}\n" for ln in table_lines))
    program = program.replace("__GSTATIC_MODULE_LOADS__\n", "".join(f"{ln}\n" for ln in load_lines))
    return program


def write_program(path: pathlib.Path, source: str) -> None:
    """Write generated C source to ``path``.

    :param path: Destination file.
    :param source: C source code.
    """

    with open(path, "w", encoding="utf-8") as f:
        f.write(source)


_PROGRAM_TEMPLATE: str = textwrap.dedent(
    r'''
    /*
     * This file was generated by gauche-static. Do not edit.
     *
     * It embeds __GSTATIC_MODULE_COUNT__ Scheme modules and replaces Scm_FindFile so the
     * native extensions preloaded into the image resolve without a filesystem
     * search.
     */

    #include <gauche.h>
    #include <string.h>
    #include <sys/stat.h>

    #define EX_SOFTWARE 70

    static const char *native_extensions[] = {
    __GSTATIC_NATIVE_TABLE__
        NULL
    };

    static const char *program_name = "";

    /* entry is name+suffix, or ends with "/" name suffix */
    static int tail_matches(const char *entry, const char *name, size_t nlen,
                            const char *suffix, size_t slen)
    {
        size_t elen = strlen(entry);
        size_t tlen = nlen + slen;
        const char *tail;

        if (elen < tlen) return FALSE;
        tail = entry + (elen - tlen);
        if (memcmp(tail, name, nlen) != 0) return FALSE;
        if (memcmp(tail + nlen, suffix, slen) != 0) return FALSE;
        return elen == tlen || tail[-1] == '/';
    }

    static ScmObj match_native_extension(const char *name, size_t nlen, ScmObj suffixes)
    {
        const char **entry;
        ScmObj sp;

        for (entry = native_extensions; *entry != NULL; entry++) {
            if (tail_matches(*entry, name, nlen, "", 0)) {
                return SCM_MAKE_STR_IMMUTABLE(*entry);
            }
            SCM_FOR_EACH(sp, suffixes) {
                const char *sfx;
                if (!SCM_STRINGP(SCM_CAR(sp))) continue;
                sfx = Scm_GetStringConst(SCM_STRING(SCM_CAR(sp)));
                if (tail_matches(*entry, name, nlen, sfx, strlen(sfx))) {
                    return SCM_MAKE_STR_IMMUTABLE(*entry);
                }
            }
        }
        return SCM_FALSE;
    }

    static int regular_file_p(ScmObj path)
    {
        struct stat st;
        return stat(Scm_GetStringConst(SCM_STRING(path)), &st) == 0 && S_ISREG(st.st_mode);
    }

    static ScmObj try_suffixes(ScmObj base, ScmObj suffixes)
    {
        ScmObj sp, candidate;

        if (regular_file_p(base)) return base;
        SCM_FOR_EACH(sp, suffixes) {
            if (!SCM_STRINGP(SCM_CAR(sp))) continue;
            candidate = Scm_StringAppend2(SCM_STRING(base), SCM_STRING(SCM_CAR(sp)));
            if (regular_file_p(candidate)) return candidate;
        }
        return SCM_FALSE;
    }

    static ScmObj resolve_load_file(ScmString *filename, ScmObj *paths,
                                    ScmObj suffixes, int flags)
    {
        const char *name = Scm_GetStringConst(filename);
        size_t nlen = strlen(name);
        ScmObj file = SCM_OBJ(filename);
        ScmObj found, lp;
        int use_load_paths = TRUE;

        if (nlen == 0) Scm_Error("bad filename to load");

        found = match_native_extension(name, nlen, suffixes);
        if (!SCM_FALSEP(found)) return found;

        if (name[0] == '~') {
            file = Scm_NormalizePathname(filename, SCM_PATH_EXPAND);
            use_load_paths = FALSE;
        } else if (name[0] == '/'
                   || strncmp(name, "./", 2) == 0
                   || strncmp(name, "../", 3) == 0) {
            use_load_paths = FALSE;
        }

        if (use_load_paths) {
            SCM_FOR_EACH(lp, *paths) {
                ScmObj base;
                if (!SCM_STRINGP(SCM_CAR(lp))) {
                    Scm_Warn("*load-path* contains invalid element: %S", SCM_CAR(lp));
                    continue;
                }
                base = Scm_StringAppendC(SCM_STRING(SCM_CAR(lp)), "/", 1, 1);
                base = Scm_StringAppend2(SCM_STRING(base), filename);
                found = try_suffixes(base, suffixes);
                if (!SCM_FALSEP(found)) {
                    *paths = SCM_CDR(lp);
                    return found;
                }
            }
        } else {
            found = try_suffixes(file, suffixes);
            if (!SCM_FALSEP(found)) {
                *paths = SCM_NIL;
                return found;
            }
        }

        if (flags & SCM_LOAD_QUIET_NOFILE) return SCM_FALSE;
        Scm_Error("cannot find file %S in *load-path* %S", file, *paths);
        return SCM_UNDEFINED;       /* dummy */
    }

    ScmObj Scm_FindFile(ScmString *filename, ScmObj *paths, ScmObj suffixes, int flags)
    {
        return resolve_load_file(filename, paths, suffixes, flags);
    }

    static int load_embedded(const char *name, const char *text)
    {
        ScmLoadPacket lpak;
        ScmObj port = Scm_MakeInputStringPort(SCM_STRING(SCM_MAKE_STR_IMMUTABLE(text)), TRUE);

        Scm_SelectModule(Scm_UserModule());
        if (Scm_LoadFromPort(SCM_PORT(port), 0, &lpak) < 0) {
            Scm_Printf(SCM_CURERR, "%s: error while loading embedded module %s: %A\n",
                       program_name, name, lpak.exception);
            return FALSE;
        }
        return TRUE;
    }

    static int load_embedded_modules(void)
    {
    __GSTATIC_MODULE_LOADS__
        return TRUE;
    }

    int main(int argc, char **argv)
    {
        ScmModule *user;
        ScmObj args, mainproc;
        ScmEvalPacket epak;

        GC_INIT();
        Scm_Init(GAUCHE_SIGNATURE);
        user = Scm_UserModule();
        if (argc > 0) program_name = argv[0];

        args = Scm_CStringArrayToList((const char **)argv, argc, SCM_STRING_IMMUTABLE);
        SCM_DEFINE(user, "*argv*", args);
        SCM_DEFINE(user, "*program-name*",
                   SCM_PAIRP(args) ? SCM_CAR(args) : SCM_MAKE_STR_IMMUTABLE(""));

        /* stop at the first module that fails to load */
        if (!load_embedded_modules()) Scm_Exit(EX_SOFTWARE);

        mainproc = Scm_GlobalVariableRef(user, SCM_SYMBOL(SCM_INTERN("main")), 0);
        if (!SCM_PROCEDUREP(mainproc)) Scm_Exit(0);

        if (Scm_Apply(mainproc, SCM_LIST1(args), &epak) < 0) {
            Scm_Printf(SCM_CURERR, "%s: %A\n", program_name, epak.exception);
            Scm_Exit(EX_SOFTWARE);
        }
        /* fixnum or bignum; out-of-range values are clamped to int */
        if (epak.numResults > 0 && SCM_INTEGERP(epak.results[0])) {
            Scm_Exit(Scm_GetInteger(epak.results[0]));
        }
        Scm_Exit(EX_SOFTWARE);
        return EX_SOFTWARE;
    }
    '''
).lstrip("\n")
