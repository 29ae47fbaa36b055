#!/usr/bin/env python3
"""
cyagen - C code based Yet Another GENerator

High-level goals:
- Scan a C source file with simple pattern matching (no compiler front end)
  and capture includes, typedefs, static variables, functions and the calls
  between them into an immutable fact model
- Render text artifacts (headers, stubs, unit-test skeletons) from templates,
  either with the built-in @tag@ language or with Jinja2
- Keep hand-edited "MANUAL SECTION" blocks alive across regenerations

The extractor is a best-effort lexical miner. It does not expand macros,
evaluate preprocessor conditionals or build a symbol table.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import argparse
import functools
import json
import os
import re
import sys
import uuid

import jinja2
import yaml


DEFAULT_LSV_MACRO_NAME = "LOCAL_STATIC_VARIABLE"
DEFAULT_ALTERNATE_SUFFIXES = (".tera", ".j2", ".njk")

# uuid5 namespace used by the generateUUID template filter (RFC 4122 OID namespace)
UUID_NAMESPACE = uuid.NAMESPACE_OID


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class CyagenError(Exception):
    """Base class for every error raised by cyagen."""


class UnbalancedScopeError(CyagenError):
    """Raised when a function body never reaches its closing brace."""

    def __init__(self, start: int) -> None:
        super().__init__(f"no matching '}}' for the scope opened before offset {start}")
        self.start = start


class TemplateRenderError(CyagenError):
    """Raised when the Jinja2 backend cannot render a template."""


class ConfigError(CyagenError):
    """Raised when a configuration file cannot be read or is not a mapping."""


class FileOperationError(CyagenError):
    """
    Raised for read/write/create failures at the file boundary.
    The message always names the operation and the path.
    """

    def __init__(self, operation: str, path: str, reason: Any) -> None:
        super().__init__(f"failed to {operation} `{path}`: {reason}")
        self.operation = operation
        self.path = path


# ============================================================
# ======================= FACT MODEL =========================
# ============================================================

@dataclass(frozen=True)
class Include:
    captured: str


@dataclass(frozen=True)
class Typedef:
    captured: str


@dataclass(frozen=True)
class StaticVariable:
    """
    A `static` variable, either found by the declaration pattern or through
    the local-static-variable helper macro.
    """
    captured: str
    name: str          # like "array"
    name_expr: str     # like "array[10]"
    dtype: str
    init: str          # array size text ("0" if none); initializer for the macro form
    array_size: int = 0
    is_const: bool = False
    is_local: bool = False  # declared within a function body
    func_name: str = ""     # owning function, empty for file scope
    value: str = ""         # raw initializer after '=', empty if absent


@dataclass(frozen=True)
class Function:
    captured: str  # signature through the opening brace
    name: str
    rtype: str
    args: str = ""
    atypes: str = ""
    anames: str = ""
    is_local: bool = False  # declared static


@dataclass(frozen=True)
class NestedCall:
    callee: Function
    caller: Function


@dataclass(frozen=True)
class FactModel:
    """
    Everything extracted from one source text.

    Built once by parse(); the only facts added afterwards are the source
    name and directory, which are known to the caller and not to the parser.
    """
    incs: Tuple[Include, ...] = ()
    typedefs: Tuple[Typedef, ...] = ()
    static_vars: Tuple[StaticVariable, ...] = ()
    fncs: Tuple[Function, ...] = ()
    ncls: Tuple[NestedCall, ...] = ()
    callees: Tuple[Function, ...] = ()

    source_name: str = ""
    source_dir_name: str = ""
    local_static_var_macro_name: str = DEFAULT_LSV_MACRO_NAME

    def with_source(self, source_name: str, source_dir_name: str = "") -> "FactModel":
        return replace(self, source_name=source_name, source_dir_name=source_dir_name)

    def to_json_obj(self) -> Dict[str, Any]:
        """
        Plain dict/list/str/int/bool view of the model, used as the Jinja2
        context and by the JSON exporter.
        """
        return {
            "source_name": self.source_name,
            "source_dir_name": self.source_dir_name,
            "local_static_var_macro_name": self.local_static_var_macro_name,
            "incs": [asdict(inc) for inc in self.incs],
            "typedefs": [asdict(td) for td in self.typedefs],
            "static_vars": [asdict(var) for var in self.static_vars],
            "fncs": [asdict(fn) for fn in self.fncs],
            "ncls": [asdict(ncl) for ncl in self.ncls],
            "callees": [asdict(fn) for fn in self.callees],
        }


# ============================================================
# ===================== LEXICAL PATTERNS =====================
# ============================================================

COMMENT_PATTERN = re.compile(r"/\*.*?\*/|//[^\n]*", re.DOTALL)

INCLUDE_PATTERN = re.compile(r"#include\s+[\"<].+[\">]")

# Either the head of a brace-bodied typedef (body balanced separately) or a
# plain one-statement typedef.
TYPEDEF_PATTERN = re.compile(r"\btypedef\s+(?:[^;{]*?(?P<brace>\{)|[^;]*;)")

STATIC_VAR_PATTERN = re.compile(
    r"\b(?P<keyword>(?:static\s+const\s+|const\s+static\s+|static\s+)+)"
    r"(?P<dtype>.*?)(?P<name>\w+)\s*"
    r"(?:\[(?P<array_size>.*?)\])?\s*"
    r"(?:=\s*(?P<value>\{.*?\}|.*?))?;",
    re.IGNORECASE,
)

FUNCTION_PATTERN = re.compile(
    r"(?:\b(?P<rtype>\w+[\w\s*]*\s+)|FUNC\((?P<rtype_ex>[^,]+),[^)]+\)\s*)"
    r"(?P<name>\w+)\w*\s*\((?P<args>[^=!<>;()\-]*)\)\s*\{"
)

# A whole preprocessor line, backslash continuations included.
PREPROCESSOR_LINE_PATTERN = re.compile(r"^[ \t]*#(?:[^\n]*\\\n)*[^\n]*", re.MULTILINE)

CONST_POINTER_PATTERN = re.compile(r"\w\s+const\s*\*")
WHITESPACE_PATTERN = re.compile(r"\s+")

STORAGE_KEYWORDS = ("static", "STATIC", "inline", "INLINE")


@functools.lru_cache(maxsize=None)
def _local_static_macro_pattern(macro_name: str) -> "re.Pattern[str]":
    # MACRO(func, type, name[size], init);
    return re.compile(
        r"\b" + re.escape(macro_name) + r"\s*\(\s*"
        r"(?P<func_name>\w+)\s*,\s*"
        r"(?P<dtype>[^,]+?)\s*,\s*"
        r"(?P<name>\w+)\s*(?:\[(?P<array_size>[^\]]*)\])?\s*,\s*"
        r"(?P<init>[^;]*?)\s*\)\s*;"
    )


# ============================================================
# ================ COMMENTS & SCOPE LOCATION =================
# ============================================================

def strip_comments(text: str) -> str:
    """Remove every /* block */ and // line comment."""
    return COMMENT_PATTERN.sub("", text)


def _blank_line(match: "re.Match[str]") -> str:
    return "".join(char if char == "\n" else " " for char in match.group(0))


def mask_preprocessor_lines(code: str) -> str:
    """
    Blank out every preprocessor line, keeping offsets and newlines intact,
    so that `#define` bodies never look like declarations.
    """
    return PREPROCESSOR_LINE_PATTERN.sub(_blank_line, code)


def find_scope_end(text: str, start: int) -> int:
    """
    Return the offset of the '}' closing the scope whose '{' sits right
    before `start`.
    """
    depth = 1
    for index in range(start, len(text)):
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    raise UnbalancedScopeError(start)


# Decides whether a body text "contains" a name or declaration. The default
# policies are plain substring tests; a token-aware variant can be passed to
# parse() instead.
ContainmentPolicy = Callable[[str, str], bool]


def textual_call_policy(body: str, callee_name: str) -> bool:
    """Textual containment heuristic: `name(` anywhere in the body."""
    return f"{callee_name}(" in body


def textual_owner_policy(body: str, declaration: str) -> bool:
    """Textual containment heuristic: the declaration text anywhere in the body."""
    return declaration in body


class ScopeIndex:
    """
    Body spans of every function, computed once per source text.

    A function body is located through the first occurrence of its captured
    signature, so functions with byte-identical signatures share one span.
    """

    def __init__(self, code: str, fncs: Sequence[Function]) -> None:
        self.code = code
        self._spans: Dict[str, Tuple[int, int]] = {}
        for fn in fncs:
            if fn.captured in self._spans:
                continue
            pos = code.find(fn.captured)
            if pos < 0:
                continue
            start = pos + len(fn.captured)
            self._spans[fn.captured] = (start, find_scope_end(code, start))

    def span(self, fn: Function) -> Optional[Tuple[int, int]]:
        return self._spans.get(fn.captured)

    def body(self, fn: Function) -> str:
        span = self.span(fn)
        if span is None:
            return ""
        start, stop = span
        return self.code[start:stop]


# ============================================================
# ===================== FACT EXTRACTION ======================
# ============================================================

def _dedup_by_text(items: List[Any]) -> List[Any]:
    seen = set()
    result = []
    for item in items:
        if item.captured in seen:
            continue
        seen.add(item.captured)
        result.append(item)
    return result


def get_incs(code: str) -> List[Include]:
    incs = [Include(captured=m.group(0).strip()) for m in INCLUDE_PATTERN.finditer(code)]
    return _dedup_by_text(incs)


def get_typedefs(code: str) -> List[Typedef]:
    typedefs: List[Typedef] = []
    pos = 0
    while True:
        match = TYPEDEF_PATTERN.search(code, pos)
        if match is None:
            break
        end = match.end()
        if match.group("brace"):
            try:
                close = find_scope_end(code, end)
            except UnbalancedScopeError:
                # Not a real body; fall back to the plain statement form.
                semi = code.find(";", match.start())
                end = semi + 1 if semi >= 0 else len(code)
            else:
                semi = code.find(";", close)
                end = semi + 1 if semi >= 0 else close + 1
        typedefs.append(Typedef(captured=code[match.start():end].strip()))
        pos = end
    return _dedup_by_text(typedefs)


def _normalize_args(raw: str) -> str:
    args = WHITESPACE_PATTERN.sub(" ", raw.strip()).replace("\\", "").strip()
    if args == "void":
        return ""
    return args


def _split_argument(arg: str) -> Optional[Tuple[str, str]]:
    """
    Split one parameter into (type, name) at the last ' ' or '*'.
    Array brackets on the name become extra '*' on the type.
    """
    arg = arg.strip()
    pos = max(arg.rfind("*"), arg.rfind(" "))
    if pos < 0:
        return None
    atype = arg[:pos + 1].strip()
    if CONST_POINTER_PATTERN.search(atype):
        # "int const *" -> "const int *"
        atype = atype.replace("const", "", 1)
        atype = WHITESPACE_PATTERN.sub(" ", f"const {atype}")
    atype += "*" * arg[pos:].count("[")
    aname = arg[pos + 1:].split("[", 1)[0].strip()
    return atype, aname


def _split_arguments(args: str) -> Tuple[str, str]:
    atypes: List[str] = []
    anames: List[str] = []
    for arg in args.split(","):
        parts = _split_argument(arg)
        if parts is None:
            continue
        atypes.append(parts[0])
        anames.append(parts[1])
    type_list = ", ".join(atypes)
    if type_list.strip() == "void":
        return "", ""
    return type_list, ", ".join(anames)


def _strip_storage_keywords(rtype: str) -> str:
    for keyword in STORAGE_KEYWORDS:
        rtype = rtype.replace(keyword, "")
    return rtype.strip()


def get_fncs(code: str) -> List[Function]:
    fncs: List[Function] = []
    for match in FUNCTION_PATTERN.finditer(mask_preprocessor_lines(code)):
        name = match.group("name").strip()
        # `else if (x) {` looks exactly like a definition
        if name == "if":
            continue
        captured = code[match.start():match.end()].strip()
        rtype = match.group("rtype_ex") or match.group("rtype")
        args = _normalize_args(match.group("args"))
        atypes, anames = _split_arguments(args)
        fncs.append(
            Function(
                captured=captured,
                name=name,
                rtype=_strip_storage_keywords(rtype),
                args=args,
                atypes=atypes,
                anames=anames,
                is_local="static" in captured.lower(),
            )
        )
    return fncs


def _parse_array_size(text: Optional[str]) -> int:
    if text is None:
        return 0
    try:
        return int(text.strip())
    except ValueError:
        return 0


def get_static_vars(
    code: str,
    fncs: Sequence[Function],
    scopes: Optional[ScopeIndex] = None,
    owner_policy: ContainmentPolicy = textual_owner_policy,
) -> List[StaticVariable]:
    """
    Static variables declared with the `static` keyword.

    A variable is local when the body of one of `fncs` contains its
    declaration text; the first such function owns it.
    """
    if scopes is None:
        scopes = ScopeIndex(code, fncs)

    result: List[StaticVariable] = []
    for match in STATIC_VAR_PATTERN.finditer(code):
        captured = match.group(0).strip()
        name = match.group("name").strip()
        size_text = match.group("array_size")
        name_expr = f"{name}[{size_text.strip()}]" if size_text is not None else name

        func_name = ""
        for fn in fncs:
            if owner_policy(scopes.body(fn), captured):
                func_name = fn.name
                break

        result.append(
            StaticVariable(
                captured=captured,
                name=name,
                name_expr=name_expr,
                dtype=match.group("dtype").strip(),
                init=size_text.strip() if size_text is not None else "0",
                array_size=_parse_array_size(size_text),
                is_const="const" in match.group("keyword").lower(),
                is_local=bool(func_name),
                func_name=func_name,
                value=(match.group("value") or "").strip(),
            )
        )
    return result


def get_local_static_macro_vars(code: str, macro_name: str = DEFAULT_LSV_MACRO_NAME) -> List[StaticVariable]:
    """
    Static variables announced through the helper macro, e.g.
    LOCAL_STATIC_VARIABLE(func, uint8_t, buffer[16], {0});
    The owning function is taken from the first macro argument.
    """
    result: List[StaticVariable] = []
    for match in _local_static_macro_pattern(macro_name).finditer(mask_preprocessor_lines(code)):
        name = match.group("name")
        size_text = match.group("array_size")
        dtype = WHITESPACE_PATTERN.sub(" ", match.group("dtype").strip())
        init = match.group("init").strip()
        result.append(
            StaticVariable(
                captured=match.group(0).strip(),
                name=name,
                name_expr=f"{name}[{size_text.strip()}]" if size_text is not None else name,
                dtype=dtype,
                init=init,
                array_size=_parse_array_size(size_text),
                is_const="const" in dtype.lower(),
                is_local=True,
                func_name=match.group("func_name"),
                value=init,
            )
        )
    return result


def get_ncls(
    code: str,
    fncs: Sequence[Function],
    scopes: Optional[ScopeIndex] = None,
    call_policy: ContainmentPolicy = textual_call_policy,
) -> List[NestedCall]:
    if scopes is None:
        scopes = ScopeIndex(code, fncs)

    ncls: List[NestedCall] = []
    for caller in fncs:
        if scopes.span(caller) is None:
            continue
        body = scopes.body(caller)
        for callee in fncs:
            if call_policy(body, callee.name):
                ncls.append(NestedCall(callee=callee, caller=caller))
    return ncls


def get_callees(ncls: Sequence[NestedCall]) -> List[Function]:
    seen = set()
    callees: List[Function] = []
    for ncl in ncls:
        if ncl.callee.name in seen:
            continue
        seen.add(ncl.callee.name)
        callees.append(ncl.callee)
    return callees


def parse(
    text: str,
    lsv_macro_name: str = DEFAULT_LSV_MACRO_NAME,
    *,
    call_policy: ContainmentPolicy = textual_call_policy,
    owner_policy: ContainmentPolicy = textual_owner_policy,
) -> FactModel:
    """
    Build the fact model of one source text.

    Raises UnbalancedScopeError when a function body is truncated.
    """
    code = strip_comments(text)
    fncs = get_fncs(code)
    scopes = ScopeIndex(code, fncs)
    ncls = get_ncls(code, fncs, scopes, call_policy)
    static_vars = get_static_vars(code, fncs, scopes, owner_policy)
    static_vars.extend(get_local_static_macro_vars(code, lsv_macro_name))
    return FactModel(
        incs=tuple(get_incs(code)),
        typedefs=tuple(get_typedefs(code)),
        static_vars=tuple(static_vars),
        fncs=tuple(fncs),
        ncls=tuple(ncls),
        callees=tuple(get_callees(ncls)),
        local_static_var_macro_name=lsv_macro_name,
    )


# ============================================================
# ====================== TAG RENDERER ========================
# ============================================================

FieldMap = List[Tuple[str, str]]


def _inc_fields(inc: Include) -> FieldMap:
    return [("@captured@", inc.captured)]


def _static_var_fields(var: StaticVariable) -> FieldMap:
    return [
        ("@captured@", var.captured),
        ("@name@", var.name),
        ("@name-expr@", var.name_expr),
        ("@func-name@", var.func_name),
        ("@dtype@", var.dtype),
        ("@init@", var.init),
    ]


def _function_fields(fn: Function) -> FieldMap:
    return [
        ("@captured@", fn.captured),
        ("@name@", fn.name),
        ("@rtype@", fn.rtype),
        ("@args@", fn.args),
        ("@atypes@", fn.atypes),
        ("@anames@", fn.anames),
    ]


def _nested_call_fields(ncl: NestedCall) -> FieldMap:
    fields: FieldMap = []
    for role, fn in (("callee", ncl.callee), ("caller", ncl.caller)):
        fields.extend([
            (f"@{role}.name@", fn.name),
            (f"@{role}.rtype@", fn.rtype),
            (f"@{role}.args@", fn.args),
            (f"@{role}.atypes@", fn.atypes),
            (f"@{role}.anames@", fn.anames),
        ])
    return fields


def _ncls_once(model: FactModel) -> List[NestedCall]:
    seen = set()
    result: List[NestedCall] = []
    for ncl in model.ncls:
        if ncl.callee.name in seen:
            continue
        seen.add(ncl.callee.name)
        result.append(ncl)
    return result


@dataclass(frozen=True)
class BlockTag:
    """
    `@name@ fragment @end-name@`: the fragment is repeated once per selected
    item with that item's fields substituted.
    """
    name: str
    select: Callable[[FactModel], Sequence[Any]]
    fields: Callable[[Any], FieldMap]
    callee_directives: bool = False
    pattern: "re.Pattern[str]" = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        tag = re.escape(self.name)
        object.__setattr__(
            self, "pattern", re.compile(f"@{tag}@(?P<fmt>.*?)@end-{tag}@", re.DOTALL)
        )


BLOCK_TAGS: Tuple[BlockTag, ...] = (
    BlockTag("incs", lambda m: m.incs, _inc_fields),
    BlockTag("static-vars", lambda m: m.static_vars, _static_var_fields),
    BlockTag("static-global-vars", lambda m: [v for v in m.static_vars if not v.is_local], _static_var_fields),
    BlockTag("static-local-vars", lambda m: [v for v in m.static_vars if v.is_local], _static_var_fields),
    BlockTag("fncs", lambda m: m.fncs, _function_fields),
    BlockTag("fncs0", lambda m: m.fncs, _function_fields),
    BlockTag("local-fncs", lambda m: [fn for fn in m.fncs if fn.is_local], _function_fields),
    BlockTag("ncls", lambda m: m.ncls, _nested_call_fields, callee_directives=True),
    BlockTag("ncls-once", _ncls_once, _nested_call_fields, callee_directives=True),
)


def _change_rtype(match: "re.Match[str]", callee: Function) -> str:
    if match.group("from") == callee.rtype:
        return match.group("to")
    return callee.rtype


def _remove_if_void_rtype(match: "re.Match[str]", callee: Function) -> str:
    if callee.rtype == "void":
        return ""
    return match.group("text")


def _remove_if_no_args(match: "re.Match[str]", callee: Function) -> str:
    if callee.args in ("", "void"):
        return ""
    return match.group("text")


@dataclass(frozen=True)
class Directive:
    """A per-callee directive applied after the plain field substitutions."""
    name: str
    pattern: "re.Pattern[str]"
    apply: Callable[["re.Match[str]", Function], str]


DIRECTIVES: Tuple[Directive, ...] = (
    Directive(
        "callee.rtype.change",
        re.compile(r"@callee\.rtype\.change\((?P<from>[A-Za-z0-9_|]+)=(?P<to>[A-Za-z0-9_|]+)\)@"),
        _change_rtype,
    ),
    Directive(
        "callee.rtype.remove",
        re.compile(r"@callee\.rtype\.remove\((?P<text>[^)]+)\)@"),
        _remove_if_void_rtype,
    ),
    Directive(
        "callee.rtype.remove0",
        re.compile(r"@callee\.rtype\.remove0\((?P<text>[^)]+)\)@"),
        _remove_if_void_rtype,
    ),
    Directive(
        "callee.args.remove",
        re.compile(r"@callee\.args\.remove\((?P<text>[^)]+)\)@"),
        _remove_if_no_args,
    ),
)


def _render_item(tag: BlockTag, fragment: str, item: Any) -> str:
    text = fragment
    for token, value in tag.fields(item):
        text = text.replace(token, value)
    if tag.callee_directives:
        for directive in DIRECTIVES:
            text = directive.pattern.sub(lambda m, d=directive: d.apply(m, item.callee), text)
    return text


def _expand_block(tag: BlockTag, model: FactModel, match: "re.Match[str]") -> str:
    fragment = match.group("fmt")
    return "".join(_render_item(tag, fragment, item) for item in tag.select(model))


_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_date(now: Optional[datetime] = None) -> str:
    """Render time like `Wed Mar  5 14:02:10 2025` (UTC, day space-padded)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return (
        f"{_WEEKDAYS[now.weekday()]} {_MONTHS[now.month - 1]} {now.day:>2} "
        f"{now:%H:%M:%S} {now.year}"
    )


def generate(
    model: FactModel,
    template: str,
    source_name: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Render a template written in the @tag@ language.

    Block tags:
    - @incs@ ... @end-incs@: @captured@
    - @static-vars@, @static-global-vars@, @static-local-vars@:
      @captured@ @name@ @name-expr@ @dtype@ @func-name@ @init@
    - @fncs@, @fncs0@, @local-fncs@: @captured@ @name@ @rtype@ @args@ @atypes@ @anames@
    - @ncls@, @ncls-once@: @callee.<f>@ / @caller.<f>@ for name, rtype, args,
      atypes, anames, plus @callee.rtype.change(<from>=<to>)@,
      @callee.rtype.remove(<text>)@, @callee.rtype.remove0(<text>)@ and
      @callee.args.remove(<text>)@
    Global tokens: @sourcename@, @date@.

    A block without its @end-...@ is left as is.
    """
    output = template
    for tag in BLOCK_TAGS:
        output = tag.pattern.sub(functools.partial(_expand_block, tag, model), output)
    return output.replace("@sourcename@", source_name).replace("@date@", format_date(now))


# ============================================================
# ================== JINJA2 TEMPLATE BACKEND =================
# ============================================================

def generate_uuid(value: str) -> str:
    """Stable name-based id (uuid5 in the OID namespace), hyphenated."""
    return str(uuid.uuid5(UUID_NAMESPACE, value))


def _generate_uuid_filter(value: Any) -> str:
    if not isinstance(value, str):
        raise jinja2.TemplateRuntimeError(
            f"generateUUID expects a string, got {type(value).__name__}"
        )
    return generate_uuid(value)


def _create_jinja_env() -> jinja2.Environment:
    env = jinja2.Environment(
        autoescape=False,
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )
    env.filters["generateUUID"] = _generate_uuid_filter
    return env


def generate_using_jinja(model: FactModel, template: str) -> str:
    """
    Render `template` with Jinja2, using the model's JSON view as context.
    Never returns partial output: any template error raises TemplateRenderError.
    """
    env = _create_jinja_env()
    try:
        return env.from_string(template).render(model.to_json_obj())
    except jinja2.TemplateError as exc:
        raise TemplateRenderError(f"template rendering failed: {exc}") from exc


# ============================================================
# ================= MANUAL SECTION MERGING ===================
# ============================================================

MANUAL_SECTION_PATTERN = re.compile(
    r"MANUAL SECTION: (?P<id>[a-f0-9-]+).*?MANUAL SECTION END", re.DOTALL
)


@functools.lru_cache(maxsize=256)
def _manual_section_pattern(section_id: str) -> "re.Pattern[str]":
    return re.compile(
        "MANUAL SECTION: " + re.escape(section_id) + r"(?![a-f0-9-]).*?MANUAL SECTION END",
        re.DOTALL,
    )


def merge_with_manual_sections(rendered: str, old_gen: Optional[str]) -> str:
    """
    Replace each manual section of `rendered` with the section of the same id
    from `old_gen`, when there is one. Everything else comes from `rendered`.
    """
    if not old_gen:
        return rendered

    def restore(match: "re.Match[str]") -> str:
        old = _manual_section_pattern(match.group("id")).search(old_gen)
        return old.group(0) if old else match.group(0)

    return MANUAL_SECTION_PATTERN.sub(restore, rendered)


# ============================================================
# ====================== CONFIGURATION =======================
# ============================================================

_WARNED_CONFIG_KEYS: set = set()


@dataclass
class GeneratorConfig:
    local_static_var_macro_name: str = DEFAULT_LSV_MACRO_NAME
    alternate_suffixes: List[str] = field(default_factory=lambda: list(DEFAULT_ALTERNATE_SUFFIXES))

    def alternate_suffix(self, filename: str) -> Optional[str]:
        """Return the Jinja2 suffix of `filename`, or None for a @tag@ template."""
        _, ext = os.path.splitext(filename)
        if ext and ext in self.alternate_suffixes:
            return ext
        return None


def _normalize_suffixes(value: Any, origin: str) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ConfigError(f"{origin}: 'alternate_suffixes' must be a string or a list")
    suffixes = []
    for item in value:
        text = str(item).strip()
        if not text:
            continue
        suffixes.append(text if text.startswith(".") else f".{text}")
    return suffixes


def load_config(path: Optional[str] = None) -> GeneratorConfig:
    """
    Build the generator configuration.

    Values come from the optional YAML file, then the environment:
    CYAGEN_LSV_MACRO_NAME overrides the local-static-variable macro name.
    """
    config = GeneratorConfig()

    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                doc = yaml.safe_load(handle)
        except FileNotFoundError:
            raise ConfigError(f"config file not found: {path}")
        except OSError as exc:
            raise ConfigError(f"could not read config file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

        if doc is None:
            doc = {}
        if not isinstance(doc, dict):
            raise ConfigError(f"{path}: expected a mapping at the top level")

        for key, value in doc.items():
            if key == "local_static_var_macro_name":
                config.local_static_var_macro_name = str(value).strip()
            elif key == "alternate_suffixes":
                config.alternate_suffixes = _normalize_suffixes(value, path)
            elif key not in _WARNED_CONFIG_KEYS:
                sys.stderr.write(f"[cyagen] Ignoring unknown config key '{key}' in {path}.\n")
                _WARNED_CONFIG_KEYS.add(key)

    env_macro = os.environ.get("CYAGEN_LSV_MACRO_NAME")
    if env_macro:
        config.local_static_var_macro_name = env_macro.strip()

    if not config.local_static_var_macro_name:
        raise ConfigError("the local static variable macro name must not be empty")
    return config


# ============================================================
# ===================== FILE GENERATION ======================
# ============================================================

def _read_text(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise FileOperationError("read file", path, exc) from exc


def _ensure_dir(path: str) -> None:
    if not path or os.path.isdir(path):
        return
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as exc:
        raise FileOperationError("create folder", path, exc) from exc


def _write_text(path: str, text: str) -> None:
    _ensure_dir(os.path.dirname(path))
    try:
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
    except OSError as exc:
        raise FileOperationError("write file", path, exc) from exc


def source_dir_name(source: str, output_dir: str) -> str:
    """Directory of `source` as seen from `output_dir`."""
    return os.path.dirname(os.path.relpath(source, output_dir or os.curdir))


def emit_model_json(model: FactModel, out: Optional[str] = None) -> None:
    """
    Serialize the fact model to JSON. Writes to `out` (creating parent
    folders) or prints to stdout.
    """
    text = json.dumps(model.to_json_obj(), indent=2, sort_keys=False)
    if out:
        _write_text(out, text + "\n")
    else:
        print(text)


def generate_files(
    model: FactModel,
    temp_dir: str,
    output_dir: str,
    config: Optional[GeneratorConfig] = None,
) -> List[str]:
    """
    Render every template under `temp_dir` into `output_dir`, recursively.

    - `@sourcename@` in file and folder names is replaced by the source name
    - templates with an alternate suffix (.tera/.j2/.njk by default) go
      through Jinja2 and lose the suffix; the rest use the @tag@ renderer
    - an existing output file is merged so its manual sections survive

    Returns the written paths.
    """
    if config is None:
        config = GeneratorConfig()

    _ensure_dir(output_dir)
    try:
        entries = sorted(os.listdir(temp_dir))
    except OSError as exc:
        raise FileOperationError("read folder", temp_dir, exc) from exc

    written: List[str] = []
    for entry in entries:
        temp_path = os.path.join(temp_dir, entry)
        out_name = entry.replace("@sourcename@", model.source_name)

        if os.path.isdir(temp_path):
            written.extend(
                generate_files(model, temp_path, os.path.join(output_dir, out_name), config)
            )
            continue

        template = _read_text(temp_path)
        suffix = config.alternate_suffix(entry)
        if suffix:
            out_name = out_name[: -len(suffix)]
            rendered = generate_using_jinja(model, template)
        else:
            rendered = generate(model, template, model.source_name)

        output_path = os.path.join(output_dir, out_name)
        sys.stderr.write(f"[cyagen] rendering ... {output_path}\n")
        if os.path.exists(output_path):
            rendered = merge_with_manual_sections(rendered, _read_text(output_path))
        _write_text(output_path, rendered)
        written.append(output_path)

    return written


# ============================================================
# ============================ CLI ===========================
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
    Intended usage:
      cyagen generate --source src/foo.c --temp-dir templates --output-dir out
      cyagen json --source src/foo.c --out build/@sourcename@.json
    """
    parser = argparse.ArgumentParser(
        prog="cyagen",
        description="cyagen: text file generator based on a C source file and templates"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    generate_p = subparsers.add_parser(
        "generate",
        help="Render every template of a folder against one C source file."
    )
    generate_p.add_argument("-s", "--source", required=True, help="C source file path.")
    generate_p.add_argument("-t", "--temp-dir", required=True, help="Template folder.")
    generate_p.add_argument("-o", "--output-dir", required=True, help="Output folder.")
    generate_p.add_argument("--config", metavar="CONFIG_YAML", help="YAML configuration file.")

    json_p = subparsers.add_parser(
        "json",
        help="Export the facts of one C source file as JSON."
    )
    json_p.add_argument("-s", "--source", required=True, help="C source file path.")
    json_p.add_argument(
        "-j", "--out",
        metavar="OUT_JSON",
        help="Write JSON to this file (@sourcename@ is substituted) instead of stdout.",
    )
    json_p.add_argument("--config", metavar="CONFIG_YAML", help="YAML configuration file.")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        code = _read_text(args.source)
        source_name = os.path.splitext(os.path.basename(args.source))[0]
        model = parse(code, config.local_static_var_macro_name)

        if args.command == "generate":
            model = model.with_source(source_name, source_dir_name(args.source, args.output_dir))
            generate_files(model, args.temp_dir, args.output_dir, config)
            sys.stderr.write("[cyagen] done!\n")
            return 0

        if args.command == "json":
            out = args.out.replace("@sourcename@", source_name) if args.out else None
            out_dir = os.path.dirname(out) if out else os.curdir
            model = model.with_source(source_name, source_dir_name(args.source, out_dir))
            emit_model_json(model, out=out)
            return 0
    except CyagenError as exc:
        sys.stderr.write(f"[cyagen] error: {exc}\n")
        return 1

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
