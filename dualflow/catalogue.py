"""dualflow/catalogue.py – S-expression pair catalogues.

A catalogue is a read-only table of source-pair, sink-pair and barrier
declarations.  It is loaded once, before analysis, and passed by reference
into :func:`dualflow.correlation.correlate` as a
:class:`~dualflow.pairs.PairConfig`.

Surface syntax
--------------
::

    (catalogue <name>
      (description "<text>")
      (message "<template>")
      (severity error|warning|note)
      (source-pair (first <matcher> ...) (second <matcher> ...) <constraint> ...)
      (sink-pair   (first <matcher> ...) (second <matcher> ...) <constraint> ...)
      (barrier     first|second|both <matcher> ...))

    ;; matchers – every matcher of a group must hold
    (id "<node-id>")
    (label "<exact label>")
    (label-match "<regex>")          ;; re.search against the label
    (kind expr|parameter|argument|return|call-result)
    (routine "<routine name>")
    (call "<callee name>")           ;; argument / result of a call to callee
    (arg <int>)                      ;; argument position

    ;; pair constraints
    (same-call)                      ;; both nodes belong to one call site
    (distinct)                       ;; the two nodes differ

Several ``source-pair`` (or ``sink-pair``) forms are alternatives.  The
message template may reference ``{source1}``, ``{source2}``, ``{sink1}``,
``{sink2}`` and ``{routine}``, including their attributes
(``{sink1.line}``, ``{routine.file}``).  The severity defaults to
``warning``.

Example – two related secrets leaving through the two arguments of one
``addCookie`` call::

    (catalogue cookie-split
      (message "{source1} and {source2} reach one addCookie call")
      (source-pair (first (label "name")) (second (label "secret")))
      (sink-pair (first (call "addCookie") (arg 0))
                 (second (call "addCookie") (arg 1))
                 (same-call)))

Design principles
-----------------
* **Head-symbol dispatch** – every ``(tag ...)`` form is handled by a
  registered ``_parse_<tag>`` helper.
* **Fail-fast** – unknown forms or malformed shapes raise
  :class:`~dualflow.errors.CatalogueError`; nothing is silently ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Pattern,
    Tuple,
    Union,
)

import sexpdata
from sexpdata import Symbol

from .errors import CatalogueError, SourceLoc
from .flowgraph import FlowNode, NodeKind, Routine
from .pairs import PairConfig


# ═══════════════════════════════════════════════════════════════════════
#  Catalogue model
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NodeMatcher:
    """A conjunction of attribute tests over one flow node."""

    node_id: Optional[str] = None
    label: Optional[str] = None
    label_pattern: Optional[Pattern[str]] = None
    kind: Optional[NodeKind] = None
    routine: Optional[str] = None
    callee: Optional[str] = None
    arg_index: Optional[int] = None

    def matches(self, node: FlowNode) -> bool:
        if self.node_id is not None and node.id != self.node_id:
            return False
        if self.label is not None and node.label != self.label:
            return False
        if self.label_pattern is not None and not self.label_pattern.search(node.label):
            return False
        if self.kind is not None and node.kind is not self.kind:
            return False
        if self.routine is not None and node.routine.name != self.routine:
            return False
        if self.callee is not None and node.callee != self.callee:
            return False
        if self.arg_index is not None and node.arg_index != self.arg_index:
            return False
        return True


@dataclass(frozen=True)
class PairRule:
    """One ``source-pair`` / ``sink-pair`` alternative."""

    first: NodeMatcher
    second: NodeMatcher
    same_call: bool = False
    distinct: bool = False

    def matches(self, a: FlowNode, b: FlowNode) -> bool:
        if self.distinct and a.id == b.id:
            return False
        if self.same_call and (a.call_site is None or a.call_site != b.call_site):
            return False
        return self.first.matches(a) and self.second.matches(b)


@dataclass(frozen=True)
class BarrierRule:
    side: str  # "first" | "second" | "both"
    matcher: NodeMatcher


@dataclass(frozen=True, eq=False)
class Catalogue(PairConfig):
    """A parsed catalogue; usable directly as a :class:`PairConfig`."""

    name: str
    description: str = ""
    message: str = ""
    severity: str = "warning"
    source_rules: Tuple[PairRule, ...] = ()
    sink_rules: Tuple[PairRule, ...] = ()
    barriers: Tuple[BarrierRule, ...] = ()
    loc: SourceLoc = field(default_factory=SourceLoc)

    def is_source_pair(self, a: FlowNode, b: FlowNode) -> bool:
        return any(rule.matches(a, b) for rule in self.source_rules)

    def is_sink_pair(self, a: FlowNode, b: FlowNode) -> bool:
        return any(rule.matches(a, b) for rule in self.sink_rules)

    def is_barrier_a(self, node: FlowNode) -> bool:
        return any(
            b.side in ("first", "both") and b.matcher.matches(node)
            for b in self.barriers
        )

    def is_barrier_b(self, node: FlowNode) -> bool:
        return any(
            b.side in ("second", "both") and b.matcher.matches(node)
            for b in self.barriers
        )

    def describe(self, source1: FlowNode, source2: FlowNode,
                 sink1: FlowNode, sink2: FlowNode) -> str:
        if not self.message:
            return super().describe(source1, source2, sink1, sink2)
        return self.message.format_map(
            _message_fields(source1, source2, sink1, sink2)
        )


def _message_fields(source1: FlowNode, source2: FlowNode,
                    sink1: FlowNode, sink2: FlowNode) -> Dict[str, Any]:
    # Templates may reference node attributes, e.g. {sink1.line}.
    return {
        "source1": source1,
        "source2": source2,
        "sink1": sink1,
        "sink2": sink2,
        "routine": sink1.routine,
    }


_SAMPLE_ROUTINE = Routine("f", "f.c")
_SAMPLE_NODES = tuple(
    FlowNode(nid, _SAMPLE_ROUTINE, label=nid, line=1)
    for nid in ("source1", "source2", "sink1", "sink2")
)


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

Sexp = Any  # Union[list, Symbol, str, int, float, bool]

_current_file: str = "<string>"


def _error(message: str) -> CatalogueError:
    return CatalogueError(message, SourceLoc(file=_current_file))


def _sym_name(s: Sexp) -> str:
    """Extract the name of a ``sexpdata.Symbol``, or raise."""
    if isinstance(s, Symbol):
        # Older sexpdata releases wrap the name; newer ones subclass str.
        value = getattr(s, "value", None)
        return str(value()) if callable(value) else str(s)
    raise _error(f"Expected symbol, got {type(s).__name__}: {s!r}")


def _head(s: list) -> str:
    if not s:
        raise _error("Unexpected empty list")
    return _sym_name(s[0])


def _expect_list(s: Sexp, *, min_len: int = 0, max_len: Optional[int] = None,
                 tag: Optional[str] = None) -> list:
    if not isinstance(s, list):
        raise _error(
            f"Expected list{f' ({tag} ...)' if tag else ''}, "
            f"got {type(s).__name__}: {s!r}"
        )
    if len(s) < min_len or (max_len is not None and len(s) > max_len):
        raise _error(f"Wrong number of elements in ({tag or _head(s)} ...): {s!r}")
    return s


def _as_str(s: Sexp) -> str:
    """Coerce *s* to ``str`` – accepts Symbol or string literal."""
    if isinstance(s, Symbol):
        return _sym_name(s)
    if isinstance(s, str):
        return s
    raise _error(f"Expected string or symbol, got {type(s).__name__}: {s!r}")


def _as_int(s: Sexp) -> int:
    if isinstance(s, int) and not isinstance(s, bool):
        return s
    raise _error(f"Expected integer, got {type(s).__name__}: {s!r}")


# ═══════════════════════════════════════════════════════════════════════
#  Dispatch registry
# ═══════════════════════════════════════════════════════════════════════

_MATCHER_DISPATCH: Dict[str, Callable[[list], Dict[str, Any]]] = {}
_ITEM_DISPATCH: Dict[str, Callable[[list, Dict[str, Any]], None]] = {}


def _register(table: dict, tag: str):
    """Decorator: register a parser function under *tag* in *table*."""
    def deco(fn):
        table[tag] = fn
        return fn
    return deco


# ── matchers ─────────────────────────────────────────────────────────

@_register(_MATCHER_DISPATCH, "id")
def _parse_id(s: list) -> Dict[str, Any]:
    _expect_list(s, min_len=2, max_len=2)
    return {"node_id": _as_str(s[1])}


@_register(_MATCHER_DISPATCH, "label")
def _parse_label(s: list) -> Dict[str, Any]:
    _expect_list(s, min_len=2, max_len=2)
    return {"label": _as_str(s[1])}


@_register(_MATCHER_DISPATCH, "label-match")
def _parse_label_match(s: list) -> Dict[str, Any]:
    _expect_list(s, min_len=2, max_len=2)
    pattern = _as_str(s[1])
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise _error(f"Invalid regex in label-match: {pattern!r}: {e}")
    return {"label_pattern": compiled}


@_register(_MATCHER_DISPATCH, "kind")
def _parse_kind(s: list) -> Dict[str, Any]:
    _expect_list(s, min_len=2, max_len=2)
    name = _as_str(s[1])
    try:
        return {"kind": NodeKind(name)}
    except ValueError:
        valid = ", ".join(k.value for k in NodeKind)
        raise _error(f"Unknown node kind {name!r} (expected one of: {valid})") from None


@_register(_MATCHER_DISPATCH, "routine")
def _parse_routine(s: list) -> Dict[str, Any]:
    _expect_list(s, min_len=2, max_len=2)
    return {"routine": _as_str(s[1])}


@_register(_MATCHER_DISPATCH, "call")
def _parse_call(s: list) -> Dict[str, Any]:
    _expect_list(s, min_len=2, max_len=2)
    return {"callee": _as_str(s[1])}


@_register(_MATCHER_DISPATCH, "arg")
def _parse_arg(s: list) -> Dict[str, Any]:
    _expect_list(s, min_len=2, max_len=2)
    return {"arg_index": _as_int(s[1])}


def _parse_matcher_group(forms: List[Sexp]) -> NodeMatcher:
    fields: Dict[str, Any] = {}
    for form in forms:
        _expect_list(form, min_len=1)
        tag = _head(form)
        parser = _MATCHER_DISPATCH.get(tag)
        if parser is None:
            raise _error(f"Unknown matcher form: ({tag} ...)")
        for key, value in parser(form).items():
            if key in fields:
                raise _error(f"Matcher ({tag} ...) given twice in one group")
            fields[key] = value
    return NodeMatcher(**fields)


# ── catalogue items ──────────────────────────────────────────────────

def _parse_pair_rule(s: list) -> PairRule:
    tag = _head(s)
    first: Optional[NodeMatcher] = None
    second: Optional[NodeMatcher] = None
    same_call = False
    distinct = False
    for part in s[1:]:
        _expect_list(part, min_len=1)
        ptag = _head(part)
        if ptag == "first":
            first = _parse_matcher_group(part[1:])
        elif ptag == "second":
            second = _parse_matcher_group(part[1:])
        elif ptag == "same-call":
            _expect_list(part, max_len=1)
            same_call = True
        elif ptag == "distinct":
            _expect_list(part, max_len=1)
            distinct = True
        else:
            raise _error(f"Unknown form ({ptag} ...) in ({tag} ...)")
    if first is None or second is None:
        raise _error(f"({tag} ...) needs both a (first ...) and a (second ...) group")
    return PairRule(first, second, same_call=same_call, distinct=distinct)


@_register(_ITEM_DISPATCH, "description")
def _parse_description(s: list, acc: Dict[str, Any]) -> None:
    _expect_list(s, min_len=2, max_len=2)
    acc["description"] = _as_str(s[1])


@_register(_ITEM_DISPATCH, "message")
def _parse_message(s: list, acc: Dict[str, Any]) -> None:
    _expect_list(s, min_len=2, max_len=2)
    message = _as_str(s[1])
    try:
        message.format_map(_message_fields(*_SAMPLE_NODES))
    except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
        raise _error(f"Bad placeholder in message {message!r}: {e}") from None
    acc["message"] = message


_SEVERITIES = ("error", "warning", "note")


@_register(_ITEM_DISPATCH, "severity")
def _parse_severity(s: list, acc: Dict[str, Any]) -> None:
    _expect_list(s, min_len=2, max_len=2)
    level = _as_str(s[1])
    if level not in _SEVERITIES:
        raise _error(f"Severity must be error, warning or note, got {level!r}")
    acc["severity"] = level


@_register(_ITEM_DISPATCH, "source-pair")
def _parse_source_pair(s: list, acc: Dict[str, Any]) -> None:
    acc["source_rules"].append(_parse_pair_rule(s))


@_register(_ITEM_DISPATCH, "sink-pair")
def _parse_sink_pair(s: list, acc: Dict[str, Any]) -> None:
    acc["sink_rules"].append(_parse_pair_rule(s))


@_register(_ITEM_DISPATCH, "barrier")
def _parse_barrier(s: list, acc: Dict[str, Any]) -> None:
    _expect_list(s, min_len=3)
    side = _as_str(s[1])
    if side not in ("first", "second", "both"):
        raise _error(f"Barrier side must be first, second or both, got {side!r}")
    acc["barriers"].append(BarrierRule(side, _parse_matcher_group(s[2:])))


# ═══════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════

def parse_catalogue(text: str, *, filename: str = "<string>") -> Catalogue:
    """Parse catalogue *text* into a :class:`Catalogue`.

    Parameters
    ----------
    text:
        S-expression source holding exactly one ``(catalogue ...)`` form.
    filename:
        Used in error locations only.
    """
    global _current_file
    _current_file = filename
    try:
        form = sexpdata.loads(text, nil=None, true=None, false=None)
    except Exception as exc:
        raise CatalogueError(f"Malformed S-expression: {exc}",
                             SourceLoc(file=filename)) from exc

    _expect_list(form, min_len=2, tag="catalogue")
    if _head(form) != "catalogue":
        raise _error(f"Expected (catalogue ...), got ({_head(form)} ...)")

    acc: Dict[str, Any] = {
        "name": _as_str(form[1]),
        "source_rules": [],
        "sink_rules": [],
        "barriers": [],
    }
    for item in form[2:]:
        _expect_list(item, min_len=1)
        tag = _head(item)
        parser = _ITEM_DISPATCH.get(tag)
        if parser is None:
            raise _error(f"Unknown catalogue form: ({tag} ...)")
        parser(item, acc)

    return Catalogue(
        name=acc["name"],
        description=acc.get("description", ""),
        message=acc.get("message", ""),
        severity=acc.get("severity", "warning"),
        source_rules=tuple(acc["source_rules"]),
        sink_rules=tuple(acc["sink_rules"]),
        barriers=tuple(acc["barriers"]),
        loc=SourceLoc(file=filename),
    )


def load_catalogue(path: Union[str, Path]) -> Catalogue:
    """Read and parse a catalogue file."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise CatalogueError(f"not valid UTF-8: {exc}", SourceLoc(file=str(p))) from exc
    return parse_catalogue(text, filename=str(p))


__all__ = [
    "NodeMatcher",
    "PairRule",
    "BarrierRule",
    "Catalogue",
    "parse_catalogue",
    "load_catalogue",
]
