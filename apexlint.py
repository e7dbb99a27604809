#!/usr/bin/env python3
"""
apexlint - Governor-limit anti-pattern scanner for Apex

High-level goals:
- Scan Apex classes and triggers lexically (no compiler front end) into a
  flat, positioned structural model
- Follow same-file call chains to find queries / DML reached from loops
- Run a fixed set of independently toggleable detectors over that model
- Emit rich structured JSON for CI / IDEs

The module is split into banner sections: scanner, structural model,
extractor, call graph, rule engine, configuration, scan driver, output, CLI.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Literal, Mapping, Optional, Pattern, Set, Tuple, Union
import argparse
import bisect
import json
import os
import re
import sys

import yaml


__version__ = "0.1.0"

DEFAULT_MAX_NESTING_DEPTH = 3


# ============================================================
# =============== SOURCE LOCATION & CONTEXT ==================
# ============================================================

@dataclass
class SourceLocation:
    line: int
    column: int


@dataclass
class SourceRange:
    """
    Zero-based line/column span. col_end is exclusive.
    """
    line_start: int
    col_start: int
    line_end: int
    col_end: int

    @classmethod
    def between(cls, start: SourceLocation, end: SourceLocation) -> "SourceRange":
        return cls(start.line, start.column, end.line, end.column)

    @property
    def start(self) -> SourceLocation:
        return SourceLocation(self.line_start, self.col_start)

    def contains_line(self, line: int) -> bool:
        return self.line_start <= line <= self.line_end


# ============================================================
# ========================= SCANNER ==========================
# ============================================================

CODE = 0
STRING = 1
LINE_COMMENT = 2
BLOCK_COMMENT = 3

_CLASS_NAMES = {
    CODE: "code",
    STRING: "string",
    LINE_COMMENT: "line_comment",
    BLOCK_COMMENT: "block_comment",
}

_BRACE_PATTERN = re.compile(r"[{}]")
_PAREN_PATTERN = re.compile(r"[()]")


class SourceScanner:
    """
    Single forward pass over Apex source that classifies every character
    offset as code, string literal, line comment or block comment.

    The opening delimiter of a string or comment is classified as code (it is
    the state *before* the character is consumed); the contents and the closing
    delimiter belong to the literal / comment. Unterminated literals and
    comments stay open until the end of input.
    """

    def __init__(self, text: str) -> None:
        self.text = text

    def scan(self) -> "ScanResult":
        text = self.text
        length = len(text)
        classes = bytearray(length)
        line_starts = [0]
        state = CODE
        quote = ""
        i = 0
        while i < length:
            char = text[i]
            classes[i] = state
            if char == "\n":
                line_starts.append(i + 1)
                if state == LINE_COMMENT:
                    state = CODE
                i += 1
                continue

            if state == CODE:
                if char == "/" and i + 1 < length and text[i + 1] == "/":
                    state = LINE_COMMENT
                elif char == "/" and i + 1 < length and text[i + 1] == "*":
                    state = BLOCK_COMMENT
                    # consume the '*' too so "/*/" does not close immediately
                    classes[i + 1] = BLOCK_COMMENT
                    i += 2
                    continue
                elif char == "'" or char == '"':
                    state = STRING
                    quote = char
            elif state == STRING:
                if char == "\\" and i + 1 < length:
                    classes[i + 1] = STRING
                    if text[i + 1] == "\n":
                        line_starts.append(i + 2)
                    i += 2
                    continue
                if char == quote:
                    state = CODE
            elif state == BLOCK_COMMENT:
                if char == "*" and i + 1 < length and text[i + 1] == "/":
                    classes[i + 1] = BLOCK_COMMENT
                    state = CODE
                    i += 2
                    continue
            i += 1

        return ScanResult(text, classes, line_starts, final_state=state)


class ScanResult:
    """
    Character classification plus line bookkeeping for one source text.
    Every query takes offsets into the original text, so callers carve
    sub-ranges (method bodies, trigger bodies) out of a single scan.
    """

    def __init__(self, text: str, classes: bytearray, line_starts: List[int], final_state: int = CODE) -> None:
        self.text = text
        self.classes = classes
        self.line_starts = line_starts
        self.final_state = final_state

    def __len__(self) -> int:
        return len(self.text)

    def classify(self, offset: int) -> str:
        if offset < 0:
            return _CLASS_NAMES[CODE]
        if offset >= len(self.text):
            return _CLASS_NAMES[self.final_state]
        return _CLASS_NAMES[self.classes[offset]]

    def is_code(self, offset: int) -> bool:
        return 0 <= offset < len(self.text) and self.classes[offset] == CODE

    def in_string_or_comment(self, offset: int) -> bool:
        if offset >= len(self.text):
            return self.final_state != CODE
        return offset >= 0 and self.classes[offset] != CODE

    def in_comment(self, offset: int) -> bool:
        return 0 <= offset < len(self.text) and self.classes[offset] in (LINE_COMMENT, BLOCK_COMMENT)

    def position(self, offset: int) -> SourceLocation:
        offset = max(0, min(offset, len(self.text)))
        line = bisect.bisect_right(self.line_starts, offset) - 1
        return SourceLocation(line, offset - self.line_starts[line])

    def iter_code(self, start: int = 0, end: Optional[int] = None) -> Iterator[Tuple[int, str]]:
        """
        Yield (offset, char) for every code character in [start, end).
        """
        text = self.text
        classes = self.classes
        stop = len(text) if end is None else min(end, len(text))
        for offset in range(max(start, 0), stop):
            if classes[offset] == CODE:
                yield offset, text[offset]

    def find_matching_brace(self, open_offset: int, end: Optional[int] = None) -> int:
        """
        Offset of the brace closing the '{' at open_offset, or -1.
        Braces inside strings and comments are ignored.
        """
        return self._find_closing(_BRACE_PATTERN, "{", open_offset, end)

    def find_matching_paren(self, open_offset: int, end: Optional[int] = None) -> int:
        """
        Offset of the ')' closing the '(' at open_offset, or -1.
        """
        return self._find_closing(_PAREN_PATTERN, "(", open_offset, end)

    def _find_closing(self, pattern: Pattern[str], opener: str, open_offset: int, end: Optional[int]) -> int:
        stop = len(self.text) if end is None else min(end, len(self.text))
        depth = 1
        for match in pattern.finditer(self.text, open_offset + 1, stop):
            offset = match.start()
            if self.classes[offset] != CODE:
                continue
            if match.group() == opener:
                depth += 1
            else:
                depth -= 1
                if depth == 0:
                    return offset
        return -1

    def code_text(self, start: int = 0, end: Optional[int] = None) -> str:
        """
        Slice of the text with string contents and comments blanked to
        spaces. Newlines survive so line structure is preserved.
        """
        stop = len(self.text) if end is None else min(end, len(self.text))
        chunk = self.text[start:stop]
        classes = self.classes[start:stop]
        return "".join(
            char if cls == CODE or char == "\n" else " "
            for char, cls in zip(chunk, classes)
        )


# ============================================================
# ==================== STRUCTURAL MODEL ======================
# ============================================================

LoopKind = Literal["for", "for-each", "while", "do-while"]
DataOperationVerb = Literal["insert", "update", "delete", "upsert", "merge", "undelete"]

DML_VERBS: Tuple[str, ...] = ("insert", "update", "delete", "upsert", "merge", "undelete")


@dataclass
class Loop:
    kind: LoopKind
    source_range: SourceRange


@dataclass
class Query:
    """
    Bracketed SOQL query or an opaque dynamic query call.
    Dynamic calls cannot be checked statically and count as limited.
    """
    text: str
    source_range: SourceRange
    has_limit: bool
    is_dynamic: bool = False
    offset: int = 0


@dataclass
class DataOperation:
    verb: DataOperationVerb
    source_range: SourceRange
    target_variable: Optional[str] = None
    qualified: bool = False  # Database.<verb>(...) form
    offset: int = 0


@dataclass
class Parameter:
    name: str
    type: str
    base_type: str
    is_collection: bool = False
    is_sobject: bool = False


@dataclass
class MethodAnnotation:
    name: str
    location: SourceLocation


@dataclass
class Method:
    name: str
    signature_range: SourceRange
    body_range: SourceRange
    source_range: SourceRange
    parameters: List[Parameter] = field(default_factory=list)
    annotations: List[MethodAnnotation] = field(default_factory=list)
    queries: List[Query] = field(default_factory=list)
    data_operations: List[DataOperation] = field(default_factory=list)
    called_method_names: List[str] = field(default_factory=list)

    def has_annotation(self, name: str) -> bool:
        wanted = name.lower()
        return any(a.name.lower() == wanted for a in self.annotations)


@dataclass
class MethodCall:
    name: str
    source_range: SourceRange
    offset: int = 0


@dataclass
class HardcodedId:
    value: str
    source_range: SourceRange


@dataclass
class FieldReference:
    name: str
    source_range: SourceRange
    object_name: Optional[str] = None

    @property
    def is_custom(self) -> bool:
        return self.name.lower().endswith("__c")


@dataclass
class Trigger:
    name: str
    object_name: str
    events: List[str]
    source_range: SourceRange
    header_range: SourceRange  # `trigger Name`
    data_operations: List[DataOperation] = field(default_factory=list)
    has_recursion_guard: bool = False

    @property
    def has_after_event(self) -> bool:
        return any("after" in event for event in self.events)


@dataclass
class DeepNesting:
    depth: int
    block_kind: str  # if / for / while / do-while / try / switch
    source_range: SourceRange


@dataclass
class ParsedFile:
    """
    Everything the extractor learned about one source file.
    """
    loops: List[Loop] = field(default_factory=list)
    queries: List[Query] = field(default_factory=list)
    data_operations: List[DataOperation] = field(default_factory=list)
    methods: List[Method] = field(default_factory=list)
    method_calls: List[MethodCall] = field(default_factory=list)
    hardcoded_ids: List[HardcodedId] = field(default_factory=list)
    field_references: List[FieldReference] = field(default_factory=list)
    deep_nestings: List[DeepNesting] = field(default_factory=list)
    trigger: Optional[Trigger] = None
    is_test_class: bool = False
    class_name: str = ""

    @property
    def is_trigger(self) -> bool:
        return self.trigger is not None


# ============================================================
# ================== HEURISTIC RULE TABLES ===================
# ============================================================

@dataclass
class HeuristicRule:
    """
    One row of a pattern -> verdict table. Tables are evaluated top-down and
    the first matching row decides.
    """
    tag: str
    pattern: Pattern[str]
    verdict: bool = True


def first_verdict(rules: Tuple[HeuristicRule, ...], text: str, default: bool = False) -> bool:
    for rule in rules:
        if rule.pattern.search(text):
            return rule.verdict
    return default


STANDARD_SOBJECTS = frozenset([
    "Account", "Contact", "Lead", "Opportunity", "Case", "Task", "Event",
    "Campaign", "User", "Profile", "UserRole", "Group", "Asset", "Contract",
    "Order", "OrderItem", "Product2", "Pricebook2", "PricebookEntry",
    "Quote", "QuoteLineItem", "Solution", "CampaignMember", "OpportunityLineItem",
    "OpportunityContactRole", "AccountContactRole", "CaseComment", "FeedItem",
    "ContentDocument", "ContentVersion", "Attachment", "Note", "Document",
    "EmailMessage", "EmailTemplate", "Folder", "Report", "Dashboard",
    "RecordType", "BusinessHours", "Holiday", "PermissionSet", "PermissionSetAssignment",
    "SObject",
])

SOBJECT_TYPE_RULES: Tuple[HeuristicRule, ...] = (
    HeuristicRule(
        "primitive",
        re.compile(r"^(?:String|Integer|Long|Decimal|Double|Boolean|Id|Date|Datetime|Time|Blob|Object)$", re.I),
        verdict=False,
    ),
    HeuristicRule(
        "standard-object",
        re.compile(r"^(?:%s)$" % "|".join(sorted(STANDARD_SOBJECTS)), re.I),
    ),
    HeuristicRule("custom-suffix", re.compile(r"__(?:c|mdt|e|x|b)$", re.I)),
)

RECURSION_GUARD_IDIOMS: Tuple[HeuristicRule, ...] = (
    # if (Handler.isFirstRun) / if (!Handler.hasRun)
    HeuristicRule(
        "static-flag-check",
        re.compile(
            r"\bif\s*\(\s*!?\s*\w+\s*\.\s*"
            r"(?:isFirstRun|hasRun|isRunning|isExecuting|firstRun|hasExecuted|isRecursive|runOnce)\b",
            re.I,
        ),
    ),
    # if (!processedIds.contains(...))
    HeuristicRule(
        "processed-set-check",
        re.compile(
            r"\bif\s*\(\s*!?\s*\w+\s*\.\s*(?:contains|containsKey|hasProcessed|isProcessed|isEmpty)\s*\(",
            re.I,
        ),
    ),
    # if (Handler.hasRun == false)
    HeuristicRule(
        "boolean-equality-check",
        re.compile(r"\bif\s*\(\s*\w+\s*\.\s*\w+\s*(?:==|!=)\s*(?:true|false)\s*\)", re.I),
    ),
    HeuristicRule("trigger-is-executing", re.compile(r"\bTrigger\s*\.\s*isExecuting\b", re.I)),
    HeuristicRule(
        "handler-class",
        re.compile(
            r"\b(?:RecursionHandler|TriggerRecursionHandler|RecursionControl|TriggerControl|"
            r"RecursionGuard|TriggerGuard|RecursionPrevention)\b",
            re.I,
        ),
    ),
    # return; } followed by Handler.flag = ...
    HeuristicRule("early-return-then-flag", re.compile(r"\breturn\s*;\s*\}?\s*\n\s*\w+\s*\.\s*\w+\s*=", re.I)),
    HeuristicRule(
        "flag-assignment",
        re.compile(
            r"\b\w+\s*\.\s*(?:isFirstRun|hasRun|isRunning|isExecuting|firstRun|hasExecuted)\s*=\s*(?:true|false)\s*;",
            re.I,
        ),
    ),
)


# ============================================================
# ================= STRUCTURAL EXTRACTION ====================
# ============================================================

_FOR_HEAD = re.compile(r"for\s*\(", re.I)
_FOR_EACH_HEAD = re.compile(r"for\s*\(\s*[\w.]+(?:\s*<[^()]*?>)?(?:\s*\[\s*\])?\s+\w+\s*:", re.I)
_WHILE_HEAD = re.compile(r"while\s*\(", re.I)
_STATEMENT_END = re.compile(r"\s*;")
_DO_HEAD = re.compile(r"do\s*\{", re.I)
_ELSE_IF_HEAD = re.compile(r"else\s+if\s*\(", re.I)
_ELSE_HEAD = re.compile(r"else\b", re.I)
_IF_HEAD = re.compile(r"if\s*\(", re.I)
_TRY_HEAD = re.compile(r"try\s*\{", re.I)
_CATCH_HEAD = re.compile(r"catch\s*\(", re.I)
_FINALLY_HEAD = re.compile(r"finally\s*\{", re.I)
_SWITCH_HEAD = re.compile(r"switch\s+on\s+", re.I)

_BRACKET_QUERY = re.compile(r"\[\s*(SELECT\s+[\s\S]*?FROM\s+[\s\S]*?)\]", re.I)
_LIMIT_CLAUSE = re.compile(r"\bLIMIT\s+\d+", re.I)
_DYNAMIC_QUERY = re.compile(r"\bDatabase\s*\.\s*(?:query|queryWithBinds)\s*\(", re.I)
_SOQL_CLAUSES = re.compile(r"\[\s*SELECT\s+([\s\S]*?)\s+FROM\s+(\w+)([\s\S]*?)\]", re.I)
_WHERE_CLAUSE = re.compile(r"WHERE\s+([\s\S]*?)(?:ORDER|GROUP|LIMIT|$)", re.I)
_WHERE_FIELD = re.compile(r"\b(\w+__c)\s*(?:=|!=|<|>|<=|>=|LIKE|IN|NOT\s+IN)\s*", re.I)
_RECORD_TYPE_SOURCE = re.compile(r"\bFROM\s+RecordType\b", re.I)

_DML_STATEMENT = re.compile(r"\b(insert|update|delete|upsert|merge|undelete)\s+([\w(\[][^;]*);", re.I)
_DML_QUALIFIED = re.compile(r"\bDatabase\s*\.\s*(insert|update|delete|upsert|merge|undelete)\s*\(([^)]+)\)", re.I)
_LEADING_IDENTIFIER = re.compile(r"^(\w+)")

_METHOD_SIGNATURE = re.compile(
    r"(?<![\w.])"
    r"(?:(?:public|private|protected|global)\s+)?"
    r"(?:(?:with|without|inherited)\s+sharing\s+)?"
    r"(?:(?:static|virtual|abstract|override|testmethod|webservice|final)\s+)*"
    r"(?P<return_type>[\w.]+(?:\s*<[\w\s,.]*(?:<[\w\s,.]*>[\w\s,.]*)*>)?(?:\s*\[\s*\])?)\s+"
    r"(?P<name>\w+)\s*\((?P<params>[^)]*)\)\s*\{",
    re.I,
)
_NOT_METHOD_NAMES = frozenset([
    "if", "for", "while", "switch", "catch", "return", "new", "throw", "when", "do", "try", "else", "on",
])
_NOT_RETURN_TYPES = frozenset([
    "else", "return", "new", "throw", "when", "on", "do", "try", "case",
])
_PARAMETER = re.compile(r"^(?:final\s+)?(.+?)\s+(\w+)$", re.I)
_LIST_TYPE = re.compile(r"^List\s*<\s*(.+)\s*>$", re.I)
_SET_TYPE = re.compile(r"^Set\s*<\s*(.+)\s*>$", re.I)
_MAP_TYPE = re.compile(r"^Map\s*<\s*[^,]+\s*,\s*(.+)\s*>$", re.I)
_ARRAY_TYPE = re.compile(r"^(.+?)\s*\[\s*\]$")

_ANNOTATION = re.compile(r"@(\w+)(?:\s*\([^)]*\))?")
_MODIFIER_LINE = re.compile(
    r"^(?:(?:public|private|protected|global|static|virtual|abstract|override|final|testmethod|webservice|"
    r"with\s+sharing|without\s+sharing|inherited\s+sharing)\s*)+$",
    re.I,
)

_CALL_SITE = re.compile(r"(?:\bthis\s*\.\s*)?\b(\w+)\s*\(")
_CALL_KEYWORDS = frozenset([
    "if", "for", "while", "switch", "catch", "return", "new", "throw", "class", "interface",
])
SOQL_KEYWORDS = frozenset([
    "SELECT", "FROM", "WHERE", "AND", "OR", "NOT", "IN", "LIKE",
    "ORDER", "BY", "ASC", "DESC", "NULLS", "FIRST", "LAST",
    "GROUP", "HAVING", "LIMIT", "OFFSET", "FOR", "UPDATE", "VIEW",
    "REFERENCE", "TRUE", "FALSE", "NULL", "YESTERDAY", "TODAY",
    "TOMORROW", "LAST_WEEK", "THIS_WEEK", "NEXT_WEEK", "LAST_MONTH",
    "THIS_MONTH", "NEXT_MONTH", "LAST_90_DAYS", "NEXT_90_DAYS",
    "LAST_N_DAYS", "NEXT_N_DAYS", "THIS_QUARTER", "LAST_QUARTER",
    "NEXT_QUARTER", "THIS_YEAR", "LAST_YEAR", "NEXT_YEAR", "ALL", "ROWS",
])

_HARDCODED_ID = re.compile(r"(['\"])([a-zA-Z0-9]{18}|[a-zA-Z0-9]{15})\1")
_ALL_DIGITS = re.compile(r"^\d+$")
_ALL_HEX = re.compile(r"^[a-f0-9]+$", re.I)
# 15/18-character field and object names that keep turning up as string literals
KNOWN_NON_ID_LITERALS = frozenset([
    "abortedjobsummary", "accountcontactrole", "opportunityhistory", "lastreferenceddate",
    "externaldatasource", "permissionsetgroup", "collaborationgroup", "quotelineitemid",
    "approvalprocess", "shippingcountry", "otherpostalcode", "billinglatitude", "mailinglatitude",
])

_TRIGGER_DECLARATION = re.compile(r"\btrigger\s+(\w+)\s+on\s+(\w+)\s*\(([^)]+)\)\s*\{", re.I)
_CLASS_DECLARATION = re.compile(
    r"\b(?:public|private|global)\s+"
    r"(?:with\s+sharing\s+|without\s+sharing\s+|inherited\s+sharing\s+)?"
    r"(?:virtual\s+|abstract\s+)?class\s+(\w+)",
    re.I,
)
_TEST_MARKER = re.compile(r"@isTest\b|\btestMethod\b", re.I)

_CUSTOM_FIELD = re.compile(r"\b(\w+__c)\b", re.I)
_RELATIONSHIP_FIELD = re.compile(r"\b(\w+)\.(\w+__c|\w+__r)\b", re.I)
_NON_FIELD_OWNERS = frozenset([
    "System", "Database", "Test", "Math", "String", "Integer", "Date", "DateTime",
    "Decimal", "Boolean", "Schema", "JSON", "Type",
])
BULK_QUERY_FIELD_COUNT = 15


def _is_word_start(text: str, offset: int) -> bool:
    if offset == 0:
        return True
    before = text[offset - 1]
    return not (before.isalnum() or before == "_" or before == ".")


def _in_spans(offset: int, spans: List[Tuple[int, int]]) -> bool:
    for start, end in spans:
        if start <= offset < end:
            return True
    return False


class _OpenConstruct:
    __slots__ = ("kind", "brace_depth", "has_brace")

    def __init__(self, kind: str, brace_depth: int) -> None:
        self.kind = kind
        self.brace_depth = brace_depth
        self.has_brace = False


class StructuralExtractor:
    """
    Turns raw Apex text into a ParsedFile.

    The text is scanned once; every pass works on offsets into that single
    scan, and method / trigger bodies are offset ranges rather than re-parsed
    substrings, so all positions are absolute. Extraction never raises on
    malformed input: a candidate whose closing token cannot be found is
    skipped and the pass moves on.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.scan = SourceScanner(text).scan()
        self._soql_spans: List[Tuple[int, int]] = [
            (m.start(), m.end()) for m in _BRACKET_QUERY.finditer(text)
        ]

    def extract(self) -> ParsedFile:
        queries = self._extract_queries()
        data_operations = self._extract_data_operations()
        methods, method_calls = self._extract_methods(queries, data_operations)
        return ParsedFile(
            loops=self._extract_loops(),
            queries=queries,
            data_operations=data_operations,
            methods=methods,
            method_calls=method_calls,
            hardcoded_ids=self._extract_hardcoded_ids(),
            field_references=self._extract_field_references(),
            deep_nestings=self._extract_deep_nestings(),
            trigger=self._extract_trigger(data_operations),
            is_test_class=self._first_code_match(_TEST_MARKER) is not None,
            class_name=self._extract_class_name(),
        )

    # ---------------- helpers ----------------

    def _range(self, start: int, end: int) -> SourceRange:
        return SourceRange.between(self.scan.position(start), self.scan.position(end))

    def _iter_code_matches(
        self,
        pattern: Pattern[str],
        start: int = 0,
        end: Optional[int] = None,
    ) -> Iterator["re.Match[str]"]:
        """
        Like pattern.finditer, but only yields matches that start in code.
        A rejected match resumes the search one character later so a match
        starting in a comment cannot swallow real code behind it.
        """
        stop = len(self.text) if end is None else end
        pos = start
        while pos <= stop:
            match = pattern.search(self.text, pos, stop)
            if match is None:
                return
            if self.scan.is_code(match.start()):
                yield match
                pos = match.end() if match.end() > match.start() else match.start() + 1
            else:
                pos = match.start() + 1

    def _first_code_match(self, pattern: Pattern[str]) -> Optional["re.Match[str]"]:
        for match in self._iter_code_matches(pattern):
            return match
        return None

    # ---------------- loops ----------------

    def _loop_kind_at(self, offset: int) -> Optional[str]:
        text = self.text
        if _FOR_HEAD.match(text, offset):
            return "for-each" if _FOR_EACH_HEAD.match(text, offset) else "for"
        head = _WHILE_HEAD.match(text, offset)
        if head:
            return None if self._is_do_while_tail(head) else "while"
        if _DO_HEAD.match(text, offset):
            return "do-while"
        return None

    def _is_do_while_tail(self, head: "re.Match[str]") -> bool:
        """
        `while (cond);` closes a do-while. The condition may hold nested
        calls, so its ')' is found by paren matching.
        """
        close_paren = self.scan.find_matching_paren(head.end() - 1)
        if close_paren == -1:
            return False
        return _STATEMENT_END.match(self.text, close_paren + 1) is not None

    def _extract_loops(self) -> List[Loop]:
        loops: List[Loop] = []
        open_loops: List[Tuple[str, int, int]] = []  # (kind, keyword offset, brace depth)
        depth = 0
        text = self.text

        for offset, char in self.scan.iter_code():
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                for index in range(len(open_loops) - 1, -1, -1):
                    kind, start, loop_depth = open_loops[index]
                    if loop_depth == depth:
                        loops.append(Loop(kind=kind, source_range=self._range(start, offset + 1)))
                        del open_loops[index]
                        break
            elif char.isalpha() and _is_word_start(text, offset):
                kind = self._loop_kind_at(offset)
                if kind:
                    open_loops.append((kind, offset, depth))

        return loops

    # ---------------- queries ----------------

    def _extract_queries(self) -> List[Query]:
        queries: List[Query] = []

        for match in self._iter_code_matches(_BRACKET_QUERY):
            query_text = match.group(1)
            queries.append(
                Query(
                    text=query_text,
                    source_range=self._range(match.start(), match.end()),
                    has_limit=bool(_LIMIT_CLAUSE.search(query_text)),
                    offset=match.start(),
                )
            )

        for match in self._iter_code_matches(_DYNAMIC_QUERY):
            queries.append(
                Query(
                    text="",
                    source_range=self._range(match.start(), match.end()),
                    has_limit=True,
                    is_dynamic=True,
                    offset=match.start(),
                )
            )

        queries.sort(key=lambda q: q.offset)
        return queries

    # ---------------- data operations ----------------

    def _extract_data_operations(self) -> List[DataOperation]:
        operations: List[DataOperation] = []
        text = self.text

        for match in self._iter_code_matches(_DML_STATEMENT):
            start = match.start()
            if start > 0 and text[start - 1] == ".":
                continue
            if _in_spans(start, self._soql_spans):
                continue
            target = _LEADING_IDENTIFIER.match(match.group(2).strip())
            operations.append(
                DataOperation(
                    verb=match.group(1).lower(),
                    source_range=self._range(start, match.end()),
                    target_variable=target.group(1) if target else None,
                    offset=start,
                )
            )

        for match in self._iter_code_matches(_DML_QUALIFIED):
            first_arg = match.group(2).strip().split(",")[0].strip()
            target = _LEADING_IDENTIFIER.match(first_arg)
            operations.append(
                DataOperation(
                    verb=match.group(1).lower(),
                    source_range=self._range(match.start(), match.end()),
                    target_variable=target.group(1) if target else None,
                    qualified=True,
                    offset=match.start(),
                )
            )

        operations.sort(key=lambda op: op.offset)
        return operations

    # ---------------- methods & calls ----------------

    def _extract_call_sites(self, declaration_offsets: Set[int]) -> List[MethodCall]:
        calls: List[MethodCall] = []
        for match in self._iter_code_matches(_CALL_SITE):
            name = match.group(1)
            if name.lower() in _CALL_KEYWORDS or name.upper() in SOQL_KEYWORDS:
                continue
            if match.start(1) in declaration_offsets:
                continue
            if _in_spans(match.start(), self._soql_spans):
                continue
            calls.append(
                MethodCall(
                    name=name,
                    source_range=self._range(match.start(), match.end()),
                    offset=match.start(),
                )
            )
        return calls

    def _extract_methods(
        self,
        queries: List[Query],
        data_operations: List[DataOperation],
    ) -> Tuple[List[Method], List[MethodCall]]:
        candidates: List[Tuple["re.Match[str]", int, int]] = []
        for match in self._iter_code_matches(_METHOD_SIGNATURE):
            name = match.group("name")
            return_type = match.group("return_type")
            if name.lower() in _NOT_METHOD_NAMES or return_type.lower() in _NOT_RETURN_TYPES:
                continue
            open_brace = match.end() - 1
            close_brace = self.scan.find_matching_brace(open_brace)
            if close_brace == -1:
                continue
            candidates.append((match, open_brace, close_brace))

        declaration_offsets = {match.start("name") for match, _, _ in candidates}
        calls = self._extract_call_sites(declaration_offsets)

        methods: List[Method] = []
        for match, open_brace, close_brace in candidates:
            body_calls: List[str] = []
            for call in calls:
                if open_brace < call.offset < close_brace and call.name not in body_calls:
                    body_calls.append(call.name)
            methods.append(
                Method(
                    name=match.group("name"),
                    signature_range=self._range(match.start(), open_brace),
                    body_range=self._range(open_brace, close_brace + 1),
                    source_range=self._range(match.start(), close_brace + 1),
                    parameters=parse_parameters(match.group("params")),
                    annotations=self._find_annotations(match.start()),
                    queries=[q for q in queries if open_brace < q.offset < close_brace],
                    data_operations=[op for op in data_operations if open_brace < op.offset < close_brace],
                    called_method_names=body_calls,
                )
            )
        return methods, calls

    def _find_annotations(self, signature_start: int) -> List[MethodAnnotation]:
        """
        Walk backwards over the lines right above a signature, collecting
        annotations. Modifier-only lines, comment lines and blank lines are
        stepped over; anything else ends the walk.
        """
        text = self.text
        found: List[MethodAnnotation] = []
        seg_end = signature_start
        seg_start = text.rfind("\n", 0, seg_end) + 1

        while True:
            segment = text[seg_start:seg_end]
            stripped = segment.strip()
            if stripped:
                first = seg_start + (len(segment) - len(segment.lstrip()))
                if stripped.startswith("@"):
                    line_annotations = [
                        MethodAnnotation(name=m.group(1), location=self.scan.position(seg_start + m.start()))
                        for m in _ANNOTATION.finditer(segment)
                        if self.scan.is_code(seg_start + m.start())
                    ]
                    found[:0] = line_annotations
                elif stripped.startswith(("//", "/*")) or self.scan.in_comment(first):
                    pass
                elif not _MODIFIER_LINE.match(stripped):
                    break
            if seg_start == 0:
                break
            seg_end = seg_start - 1
            seg_start = text.rfind("\n", 0, seg_end) + 1

        return found

    # ---------------- hardcoded ids ----------------

    def _extract_hardcoded_ids(self) -> List[HardcodedId]:
        ids: List[HardcodedId] = []
        for match in _HARDCODED_ID.finditer(self.text):
            value = match.group(2)
            if self.scan.in_comment(match.start()):
                continue
            if not is_plausible_record_id(value):
                continue
            ids.append(HardcodedId(value=value, source_range=self._range(match.start(), match.end())))
        return ids

    # ---------------- triggers ----------------

    def _extract_trigger(self, data_operations: List[DataOperation]) -> Optional[Trigger]:
        match = self._first_code_match(_TRIGGER_DECLARATION)
        if match is None:
            return None

        open_brace = match.end() - 1
        close_brace = self.scan.find_matching_brace(open_brace)
        if close_brace == -1:
            return None

        events = [" ".join(event.split()).lower() for event in match.group(3).split(",") if event.strip()]
        body = self.scan.code_text(open_brace, close_brace + 1)
        return Trigger(
            name=match.group(1),
            object_name=match.group(2),
            events=events,
            source_range=self._range(match.start(), close_brace + 1),
            header_range=self._range(match.start(), match.end(1)),
            data_operations=[op for op in data_operations if open_brace < op.offset < close_brace],
            has_recursion_guard=first_verdict(RECURSION_GUARD_IDIOMS, body),
        )

    # ---------------- class facts ----------------

    def _extract_class_name(self) -> str:
        match = self._first_code_match(_CLASS_DECLARATION)
        return match.group(1) if match else ""

    # ---------------- field references ----------------

    def _bulk_query_spans(self) -> List[Tuple[int, int]]:
        spans: List[Tuple[int, int]] = []
        for match in _SOQL_CLAUSES.finditer(self.text):
            if len(match.group(1).split(",")) > BULK_QUERY_FIELD_COUNT:
                spans.append((match.start(), match.end()))
        return spans

    def _field_visible(self, offset: int, bulk_spans: List[Tuple[int, int]]) -> bool:
        if _in_spans(offset, bulk_spans):
            return False
        if self.scan.in_string_or_comment(offset) and not _in_spans(offset, self._soql_spans):
            return False
        return True

    def _find_field_position(self, name: str, start_offset: int) -> SourceRange:
        pattern = re.compile(r"\b%s\b" % re.escape(name), re.I)
        match = pattern.search(self.text, start_offset) or pattern.search(self.text)
        if match is None:
            return SourceRange(0, 0, 0, len(name))
        return self._range(match.start(), match.start() + len(name))

    def _extract_field_references(self) -> List[FieldReference]:
        fields: List[FieldReference] = []
        seen: Set[str] = set()
        bulk_spans = self._bulk_query_spans()

        # bare custom fields: Billing_Country__c
        for match in _CUSTOM_FIELD.finditer(self.text):
            name = match.group(1)
            if not self._field_visible(match.start(), bulk_spans):
                continue
            key = name.lower()
            if key in seen:
                continue
            seen.add(key)
            fields.append(FieldReference(name=name, source_range=self._range(match.start(), match.end())))

        # relationship paths: Account.Region__c, Contact.Parent__r
        for match in _RELATIONSHIP_FIELD.finditer(self.text):
            owner, name = match.group(1), match.group(2)
            if owner in _NON_FIELD_OWNERS:
                continue
            if not self._field_visible(match.start(), bulk_spans):
                continue
            key = f"{owner}.{name}".lower()
            if key in seen:
                continue
            seen.add(key)
            fields.append(
                FieldReference(
                    name=name,
                    object_name=owner,
                    source_range=self._range(match.start(), match.end()),
                )
            )

        # SELECT and WHERE clauses of inline queries
        for match in _SOQL_CLAUSES.finditer(self.text):
            select_fields = [part.strip() for part in match.group(1).split(",")]
            if len(select_fields) > BULK_QUERY_FIELD_COUNT:
                continue
            from_object = match.group(2)
            for select_field in select_fields:
                parts = select_field.split(".")
                name = parts[-1]
                if not name.lower().endswith("__c") or name.lower() in seen:
                    continue
                seen.add(name.lower())
                fields.append(
                    FieldReference(
                        name=name,
                        object_name=parts[-2] if len(parts) > 1 else from_object,
                        source_range=self._find_field_position(name, match.start()),
                    )
                )

            where = _WHERE_CLAUSE.search(match.group(3) or "")
            if not where:
                continue
            for where_field in _WHERE_FIELD.finditer(where.group(1)):
                name = where_field.group(1)
                if name.lower() in seen:
                    continue
                seen.add(name.lower())
                fields.append(
                    FieldReference(
                        name=name,
                        object_name=from_object,
                        source_range=self._find_field_position(name, match.start()),
                    )
                )

        return fields

    # ---------------- nesting ----------------

    def _control_kind_at(self, offset: int) -> Optional[str]:
        text = self.text
        if _ELSE_IF_HEAD.match(text, offset):
            return "else-if"
        if _ELSE_HEAD.match(text, offset):
            return "else"
        if _IF_HEAD.match(text, offset):
            return "if"
        if _CATCH_HEAD.match(text, offset):
            return "catch"
        if _FINALLY_HEAD.match(text, offset):
            return "finally"
        if _TRY_HEAD.match(text, offset):
            return "try"
        if _SWITCH_HEAD.match(text, offset):
            return "switch"
        kind = self._loop_kind_at(offset)
        return "for" if kind == "for-each" else kind

    def _extract_deep_nestings(self) -> List[DeepNesting]:
        """
        Track open control constructs on a stack. else/catch/finally reopen
        the construct that just closed at the same brace depth instead of
        adding a level; brace-less bodies close at the next top-level ';'.
        """
        nestings: List[DeepNesting] = []
        stack: List[_OpenConstruct] = []
        last_closed: Dict[int, str] = {}
        line_index: Dict[int, int] = {}
        depth = 0
        paren_depth = 0
        text = self.text

        for offset, char in self.scan.iter_code():
            if char == "{":
                depth += 1
                for construct in reversed(stack):
                    if not construct.has_brace and construct.brace_depth == depth - 1:
                        construct.has_brace = True
                        break
            elif char == "}":
                while stack and stack[-1].has_brace and stack[-1].brace_depth == depth - 1:
                    closed = stack.pop()
                    last_closed[closed.brace_depth] = closed.kind
                depth -= 1
            elif char == "(":
                paren_depth += 1
            elif char == ")":
                paren_depth = max(0, paren_depth - 1)
            elif char == ";":
                if paren_depth == 0:
                    while stack and not stack[-1].has_brace:
                        closed = stack.pop()
                        last_closed[closed.brace_depth] = closed.kind
            elif char.isalpha() and _is_word_start(text, offset):
                kind = self._control_kind_at(offset)
                if kind is None or kind == "else-if":
                    continue
                if kind in ("else", "catch", "finally"):
                    previous = last_closed.get(depth)
                    if previous:
                        stack.append(_OpenConstruct(previous, depth))
                    continue

                stack.append(_OpenConstruct(kind, depth))
                if len(stack) < 2:
                    continue
                location = self.scan.position(offset)
                index = line_index.get(location.line)
                if index is not None and nestings[index].depth >= len(stack):
                    continue
                keyword_length = len(kind.split("-")[0])
                nesting = DeepNesting(
                    depth=len(stack),
                    block_kind=kind,
                    source_range=SourceRange(
                        location.line,
                        location.column,
                        location.line,
                        location.column + keyword_length,
                    ),
                )
                if index is None:
                    line_index[location.line] = len(nestings)
                    nestings.append(nesting)
                else:
                    nestings[index] = nesting

        return nestings


def extract(text: str) -> ParsedFile:
    """
    Parse one Apex source text into its structural model.
    """
    return StructuralExtractor(text).extract()


def split_parameters(param_string: str) -> List[str]:
    """
    Split a parameter list on top-level commas; commas inside generic
    angle brackets do not split.
    """
    params: List[str] = []
    current: List[str] = []
    depth = 0
    for char in param_string:
        if char == "<":
            depth += 1
        elif char == ">":
            depth -= 1
        elif char == "," and depth == 0:
            piece = "".join(current).strip()
            if piece:
                params.append(piece)
            current = []
            continue
        current.append(char)
    piece = "".join(current).strip()
    if piece:
        params.append(piece)
    return params


def parse_collection_type(type_text: str) -> Tuple[bool, str]:
    """
    Returns (is_collection, base_type). Maps use their value type.
    """
    trimmed = type_text.strip()
    for pattern in (_LIST_TYPE, _SET_TYPE, _MAP_TYPE, _ARRAY_TYPE):
        match = pattern.match(trimmed)
        if match:
            return True, match.group(1).strip()
    return False, trimmed


def is_sobject_type(type_name: str) -> bool:
    base = type_name.split("<")[0].strip().split(".")[-1]
    return first_verdict(SOBJECT_TYPE_RULES, base)


def parse_parameters(param_string: str) -> List[Parameter]:
    params: List[Parameter] = []
    for raw in split_parameters(param_string):
        match = _PARAMETER.match(" ".join(raw.split()))
        if not match:
            continue
        full_type = match.group(1).strip()
        is_collection, base_type = parse_collection_type(full_type)
        params.append(
            Parameter(
                name=match.group(2),
                type=full_type,
                base_type=base_type,
                is_collection=is_collection,
                is_sobject=is_sobject_type(base_type),
            )
        )
    return params


def is_plausible_record_id(value: str) -> bool:
    if len(value) not in (15, 18) or not value.isalnum():
        return False
    if _ALL_DIGITS.match(value):
        return False
    if len(value) == 15 and _ALL_HEX.match(value):
        return False
    return value.lower() not in KNOWN_NON_ID_LITERALS


# ============================================================
# ====================== CALL GRAPH ==========================
# ============================================================

FactKind = Literal["query", "data_operation"]


@dataclass
class ReachableFact:
    """
    A query or data operation reached from a call site.
    `via` names the method whose body made the call; None for the method
    named at the call site itself.
    """
    method: Method
    fact: Union[Query, DataOperation]
    via: Optional[str] = None


def _facts_of(method: Method, fact_kind: FactKind) -> List[Any]:
    if fact_kind == "query":
        return method.queries
    return method.data_operations


class CallGraph:
    """
    Name-indexed view over a file's methods. Traversal carries method
    names only; method data is never copied.
    """

    def __init__(self, methods: List[Method]) -> None:
        self.methods_by_name: Dict[str, Method] = {}
        for method in methods:
            # overloads: the first definition wins
            self.methods_by_name.setdefault(method.name, method)

    def resolve(self, callee_name: str, fact_kind: FactKind) -> List[ReachableFact]:
        """
        Every method reachable from `callee_name` (itself included) that
        holds a fact of `fact_kind`, each with its first such fact.
        Names already visited are never walked again, so cycles terminate;
        names with no local definition end their branch.
        """
        origin = self.methods_by_name.get(callee_name)
        if origin is None:
            return []
        reached: List[ReachableFact] = []
        self._walk(origin, None, fact_kind, {origin.name}, reached)
        return reached

    def _walk(
        self,
        method: Method,
        via: Optional[str],
        fact_kind: FactKind,
        visited: Set[str],
        reached: List[ReachableFact],
    ) -> None:
        facts = _facts_of(method, fact_kind)
        if facts:
            reached.append(ReachableFact(method=method, fact=facts[0], via=via))
        for name in method.called_method_names:
            if name in visited:
                continue
            visited.add(name)
            callee = self.methods_by_name.get(name)
            if callee is None:
                continue
            self._walk(callee, method.name, fact_kind, visited, reached)


# ============================================================
# ======================= ISSUE MODEL ========================
# ============================================================

SOQL_IN_LOOP = "SOQL_IN_LOOP"
SOQL_IN_LOOP_VIA_METHOD = "SOQL_IN_LOOP_VIA_METHOD"
DML_IN_LOOP = "DML_IN_LOOP"
DML_IN_LOOP_VIA_METHOD = "DML_IN_LOOP_VIA_METHOD"
HARDCODED_ID = "HARDCODED_ID"
MISSING_LIMIT = "MISSING_LIMIT"
RECORD_TYPE_QUERY = "RECORD_TYPE_QUERY"
SINGLE_SOBJECT_PARAMETER = "SINGLE_SOBJECT_PARAMETER"
NON_BULKIFIED_INVOCABLE = "NON_BULKIFIED_INVOCABLE"
TRIGGER_WITHOUT_RECURSION_GUARD = "TRIGGER_WITHOUT_RECURSION_GUARD"
DEEPLY_NESTED_CODE = "DEEPLY_NESTED_CODE"
UNTESTED_FIELD = "UNTESTED_FIELD"

ISSUE_SEVERITY: Dict[str, str] = {
    SOQL_IN_LOOP: "error",
    SOQL_IN_LOOP_VIA_METHOD: "error",
    DML_IN_LOOP: "error",
    DML_IN_LOOP_VIA_METHOD: "error",
    HARDCODED_ID: "warning",
    MISSING_LIMIT: "warning",
    RECORD_TYPE_QUERY: "warning",
    SINGLE_SOBJECT_PARAMETER: "warning",
    NON_BULKIFIED_INVOCABLE: "error",
    TRIGGER_WITHOUT_RECURSION_GUARD: "warning",
    DEEPLY_NESTED_CODE: "info",
    UNTESTED_FIELD: "warning",
}


@dataclass
class RelatedInfo:
    source_range: SourceRange
    message: str


@dataclass
class Issue:
    kind: str
    severity: str
    message: str
    source_range: SourceRange
    related: Optional[RelatedInfo] = None


def make_issue(
    kind: str,
    message: str,
    source_range: SourceRange,
    related: Optional[RelatedInfo] = None,
) -> Issue:
    return Issue(
        kind=kind,
        severity=ISSUE_SEVERITY[kind],
        message=message,
        source_range=source_range,
        related=related,
    )


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

class ConfigError(Exception):
    """Raised when a configuration mapping carries an invalid value."""


# YAML key -> attribute. The extension's original names are kept as aliases.
CONFIG_KEYS: Dict[str, str] = {
    "detectQueryInLoop": "detect_query_in_loop",
    "detectSOQLInLoops": "detect_query_in_loop",
    "detectDataOpInLoop": "detect_data_op_in_loop",
    "detectDMLInLoops": "detect_data_op_in_loop",
    "detectHardcodedIds": "detect_hardcoded_ids",
    "detectMissingLimit": "detect_missing_limit",
    "detectMissingLimits": "detect_missing_limit",
    "followMethodCalls": "follow_method_calls",
    "detectUntestedFields": "detect_untested_fields",
    "detectRecordTypeQueries": "detect_record_type_queries",
    "detectNonBulkifiedMethods": "detect_non_bulkified_methods",
    "detectTriggerRecursion": "detect_trigger_recursion",
    "detectDeeplyNestedCode": "detect_deeply_nested_code",
    "maxNestingDepth": "max_nesting_depth",
}


@dataclass
class AnalyzerConfig:
    detect_query_in_loop: bool = True
    detect_data_op_in_loop: bool = True
    detect_hardcoded_ids: bool = True
    detect_missing_limit: bool = False
    follow_method_calls: bool = True
    detect_untested_fields: bool = True
    detect_record_type_queries: bool = True
    detect_non_bulkified_methods: bool = True
    detect_trigger_recursion: bool = True
    detect_deeply_nested_code: bool = True
    max_nesting_depth: int = DEFAULT_MAX_NESTING_DEPTH

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, origin: str = "<config>") -> "AnalyzerConfig":
        """
        Build a config from camelCase (or snake_case) keys. Unknown keys are
        reported and ignored; invalid values raise ConfigError.
        """
        attributes = set(cls.__dataclass_fields__)
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            attr = CONFIG_KEYS.get(str(key), str(key) if key in attributes else None)
            if attr is None:
                sys.stderr.write(f"[apexlint] Ignoring unknown option '{key}' in {origin}.\n")
                continue
            if attr == "max_nesting_depth":
                if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                    raise ConfigError(f"{key} must be a positive integer, got {value!r}")
            elif not isinstance(value, bool):
                raise ConfigError(f"{key} must be true or false, got {value!r}")
            values[attr] = value
        return cls(**values)


def load_config_from_yaml(path: Optional[str]) -> AnalyzerConfig:
    """
    Load AnalyzerConfig from a YAML file. Options may sit at the top level
    or under an `apexlint:` key. Any problem is reported on stderr and the
    defaults are used so the scan can proceed.
    """
    if not path:
        return AnalyzerConfig()

    try:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except FileNotFoundError:
        sys.stderr.write(f"[apexlint] Config file not found: {path}\n")
        return AnalyzerConfig()
    except OSError as exc:
        sys.stderr.write(f"[apexlint] Could not read config file {path}: {exc}\n")
        return AnalyzerConfig()
    except yaml.YAMLError as exc:
        sys.stderr.write(f"[apexlint] Invalid YAML in config file {path}: {exc}\n")
        return AnalyzerConfig()

    if document is None:
        return AnalyzerConfig()
    if isinstance(document, dict) and isinstance(document.get("apexlint"), dict):
        document = document["apexlint"]
    if not isinstance(document, dict):
        sys.stderr.write(f"[apexlint] Config file {path} must contain a mapping; using defaults.\n")
        return AnalyzerConfig()

    try:
        return AnalyzerConfig.from_mapping(document, origin=path)
    except ConfigError as exc:
        sys.stderr.write(f"[apexlint] Invalid config in {path}: {exc}; using defaults.\n")
        return AnalyzerConfig()


# ============================================================
# ====================== RULE ENGINE =========================
# ============================================================

class RuleEngine:
    """
    Runs the enabled detectors over a ParsedFile, in a fixed order, and
    returns a fresh list of Issues. The ParsedFile is only read.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None) -> None:
        self.config = config or AnalyzerConfig()

    def analyze(self, parsed: ParsedFile) -> List[Issue]:
        issues: List[Issue] = []
        call_graph = CallGraph(parsed.methods)

        if self.config.detect_query_in_loop:
            issues.extend(self._detect_queries_in_loops(parsed, call_graph))

        if self.config.detect_data_op_in_loop:
            issues.extend(self._detect_data_operations_in_loops(parsed, call_graph))

        if self.config.detect_hardcoded_ids:
            issues.extend(self._detect_hardcoded_ids(parsed))

        if self.config.detect_missing_limit:
            issues.extend(self._detect_missing_limits(parsed))

        if self.config.detect_record_type_queries:
            issues.extend(self._detect_record_type_queries(parsed))

        if self.config.detect_non_bulkified_methods:
            issues.extend(self._detect_single_sobject_parameter(parsed))
            issues.extend(self._detect_non_bulkified_invocable(parsed))

        if self.config.detect_trigger_recursion:
            issues.extend(self._detect_trigger_without_recursion_guard(parsed))

        if self.config.detect_deeply_nested_code:
            issues.extend(self._detect_deeply_nested_code(parsed))

        return issues

    # ---------------- loops ----------------

    def _detect_queries_in_loops(self, parsed: ParsedFile, call_graph: CallGraph) -> List[Issue]:
        issues: List[Issue] = []
        reported: Set[Tuple[int, str, int]] = set()

        for loop in parsed.loops:
            for query in parsed.queries:
                if loop.source_range.contains_line(query.source_range.line_start):
                    issues.append(
                        make_issue(
                            SOQL_IN_LOOP,
                            f"SOQL query inside {loop.kind} loop. This can cause governor limit issues. "
                            "Consider bulkifying by querying outside the loop.",
                            query.source_range,
                        )
                    )

            if self.config.follow_method_calls:
                issues.extend(self._detect_via_calls(parsed, call_graph, loop, "query", reported))

        return issues

    def _detect_data_operations_in_loops(self, parsed: ParsedFile, call_graph: CallGraph) -> List[Issue]:
        issues: List[Issue] = []
        reported: Set[Tuple[int, str, int]] = set()

        for loop in parsed.loops:
            for operation in parsed.data_operations:
                if loop.source_range.contains_line(operation.source_range.line_start):
                    issues.append(
                        make_issue(
                            DML_IN_LOOP,
                            f"DML operation '{operation.verb}' inside {loop.kind} loop. This can cause governor "
                            "limit issues. Consider collecting records and performing DML outside the loop.",
                            operation.source_range,
                        )
                    )

            if self.config.follow_method_calls:
                issues.extend(self._detect_via_calls(parsed, call_graph, loop, "data_operation", reported))

        return issues

    def _detect_via_calls(
        self,
        parsed: ParsedFile,
        call_graph: CallGraph,
        loop: Loop,
        fact_kind: FactKind,
        reported: Set[Tuple[int, str, int]],
    ) -> List[Issue]:
        """
        Loops are listed innermost first, so a call sitting in nested loops
        is reported once, against the innermost loop.
        """
        issues: List[Issue] = []
        for call in parsed.method_calls:
            if not loop.source_range.contains_line(call.source_range.line_start):
                continue
            for reachable in call_graph.resolve(call.name, fact_kind):
                key = (call.offset, reachable.method.name, reachable.fact.offset)
                if key in reported:
                    continue
                reported.add(key)
                issues.append(self._via_call_issue(call, loop, reachable))
        return issues

    def _via_call_issue(self, call: MethodCall, loop: Loop, reachable: ReachableFact) -> Issue:
        method_name = reachable.method.name
        fact = reachable.fact
        if isinstance(fact, DataOperation):
            kind = DML_IN_LOOP_VIA_METHOD
            if reachable.via is None:
                message = (
                    f"Method '{call.name}()' contains DML ({fact.verb}) and is called inside a {loop.kind} loop. "
                    "This can cause governor limit issues."
                )
                related_message = f"DML '{fact.verb}' in method '{method_name}'"
            else:
                message = (
                    f"Method '{call.name}()' calls '{method_name}()' which contains DML ({fact.verb}). "
                    f"Called inside a {loop.kind} loop."
                )
                related_message = f"DML '{fact.verb}' in '{method_name}()' (called via '{reachable.via}()')"
        else:
            kind = SOQL_IN_LOOP_VIA_METHOD
            if reachable.via is None:
                message = (
                    f"Method '{call.name}()' contains SOQL and is called inside a {loop.kind} loop. "
                    "This can cause governor limit issues."
                )
                related_message = f"SOQL query in method '{method_name}'"
            else:
                message = (
                    f"Method '{call.name}()' calls '{method_name}()' which contains SOQL. "
                    f"Called inside a {loop.kind} loop."
                )
                related_message = f"SOQL in '{method_name}()' (called via '{reachable.via}()')"

        return make_issue(
            kind,
            message,
            call.source_range,
            related=RelatedInfo(source_range=fact.source_range, message=related_message),
        )

    # ---------------- single-fact detectors ----------------

    def _detect_hardcoded_ids(self, parsed: ParsedFile) -> List[Issue]:
        return [
            make_issue(
                HARDCODED_ID,
                f"Hardcoded Salesforce ID '{record_id.value}' detected. Hardcoded IDs break between "
                "environments. Consider using Custom Settings, Custom Metadata, or queries.",
                record_id.source_range,
            )
            for record_id in parsed.hardcoded_ids
        ]

    def _detect_missing_limits(self, parsed: ParsedFile) -> List[Issue]:
        return [
            make_issue(
                MISSING_LIMIT,
                "SOQL query without LIMIT clause. Consider adding LIMIT to prevent unexpected large data volumes.",
                query.source_range,
            )
            for query in parsed.queries
            if not query.has_limit
        ]

    def _detect_record_type_queries(self, parsed: ParsedFile) -> List[Issue]:
        return [
            make_issue(
                RECORD_TYPE_QUERY,
                "Avoid SOQL on RecordType. Use Schema.SObjectType.YourSFObject.getRecordTypeInfosByDeveloperName() "
                "instead - it's cached and doesn't count against SOQL limits.",
                query.source_range,
            )
            for query in parsed.queries
            if _RECORD_TYPE_SOURCE.search(query.text)
        ]

    # ---------------- bulkification ----------------

    def _detect_single_sobject_parameter(self, parsed: ParsedFile) -> List[Issue]:
        issues: List[Issue] = []
        for method in parsed.methods:
            if len(method.parameters) != 1:
                continue
            param = method.parameters[0]
            if not param.is_sobject or param.is_collection:
                continue
            if any(op.target_variable == param.name for op in method.data_operations):
                issues.append(
                    make_issue(
                        SINGLE_SOBJECT_PARAMETER,
                        f"Method '{method.name}' accepts a single {param.type} and performs DML on it. "
                        f"Consider accepting List<{param.type}> for bulkification.",
                        method.signature_range,
                    )
                )
        return issues

    def _detect_non_bulkified_invocable(self, parsed: ParsedFile) -> List[Issue]:
        issues: List[Issue] = []
        for method in parsed.methods:
            if not method.has_annotation("InvocableMethod"):
                continue

            if not method.parameters:
                issues.append(
                    make_issue(
                        NON_BULKIFIED_INVOCABLE,
                        f"@InvocableMethod '{method.name}' must accept a List parameter. "
                        "Invocable methods receive bulk input.",
                        method.signature_range,
                    )
                )
                continue

            first = method.parameters[0]
            if not first.is_collection or not first.type.lower().startswith("list"):
                issues.append(
                    make_issue(
                        NON_BULKIFIED_INVOCABLE,
                        f"@InvocableMethod '{method.name}' should accept a List<{first.type}> parameter. "
                        "Invocable methods receive bulk input and should be bulkified.",
                        method.signature_range,
                    )
                )
        return issues

    # ---------------- triggers ----------------

    def _detect_trigger_without_recursion_guard(self, parsed: ParsedFile) -> List[Issue]:
        trigger = parsed.trigger
        if trigger is None or not trigger.data_operations or trigger.has_recursion_guard:
            return []
        if not trigger.has_after_event:
            return []
        if not any(op.verb in ("insert", "update", "upsert") for op in trigger.data_operations):
            return []

        verbs: List[str] = []
        for op in trigger.data_operations:
            if op.verb not in verbs:
                verbs.append(op.verb)
        return [
            make_issue(
                TRIGGER_WITHOUT_RECURSION_GUARD,
                f"Trigger '{trigger.name}' contains DML ({', '.join(verbs)}) without recursion protection. "
                "This may cause infinite recursion. Consider using a static variable to prevent re-entry.",
                trigger.header_range,
            )
        ]

    # ---------------- nesting ----------------

    def _detect_deeply_nested_code(self, parsed: ParsedFile) -> List[Issue]:
        max_depth = self.config.max_nesting_depth
        return [
            make_issue(
                DEEPLY_NESTED_CODE,
                f"Code is nested {nesting.depth} levels deep ({nesting.block_kind}). Consider extracting to a "
                f"separate method to improve readability. Maximum recommended: {max_depth} levels.",
                nesting.source_range,
            )
            for nesting in parsed.deep_nestings
            if nesting.depth > max_depth
        ]

    # ---------------- cross-file ----------------

    def analyze_untested_fields(self, source: ParsedFile, test: ParsedFile) -> List[Issue]:
        """
        Custom (__c) fields the source class touches that its test class never
        mentions. Only the test file's set of field names matters.
        """
        source_fields: Dict[str, FieldReference] = {}
        for reference in source.field_references:
            if not reference.is_custom:
                continue
            source_fields.setdefault(reference.name.lower(), reference)

        test_fields = {reference.name.lower() for reference in test.field_references}

        issues: List[Issue] = []
        for normalized, reference in source_fields.items():
            if normalized in test_fields:
                continue
            issues.append(
                make_issue(
                    UNTESTED_FIELD,
                    f"Custom field '{reference.name}' is referenced in source class but not in test class. "
                    "Consider adding test coverage for this field.",
                    _field_name_range(reference),
                )
            )
        return issues


def _field_name_range(reference: FieldReference) -> SourceRange:
    """
    Range of just the field name (relationship paths start at the owner).
    """
    span = reference.source_range
    if reference.object_name and span.line_start == span.line_end:
        return SourceRange(span.line_start, span.col_end - len(reference.name), span.line_end, span.col_end)
    return span


def analyze(parsed: ParsedFile, config: Optional[AnalyzerConfig] = None) -> List[Issue]:
    return RuleEngine(config).analyze(parsed)


def analyze_untested_fields(source: ParsedFile, test: ParsedFile) -> List[Issue]:
    return RuleEngine().analyze_untested_fields(source, test)


# ============================================================
# ====================== SCAN DRIVER =========================
# ============================================================

TEST_CLASS_NAME_PATTERNS: Tuple[str, ...] = (
    "{name}Test",
    "{name}_Test",
    "Test{name}",
    "{name}Tests",
)

SourceResolver = Callable[[str], Optional[str]]


@dataclass
class ScanReport:
    issues: List[Issue]
    parsed: ParsedFile

    @property
    def issue_count(self) -> int:
        return len(self.issues)


def find_companion_test_source(class_name: str, resolver: SourceResolver) -> Optional[str]:
    """
    Try each test naming convention in order; the first resolvable name wins.
    """
    for pattern in TEST_CLASS_NAME_PATTERNS:
        candidate = pattern.format(name=class_name)
        try:
            source = resolver(candidate)
        except OSError as exc:
            sys.stderr.write(f"[apexlint] Could not read test class {candidate}: {exc}\n")
            continue
        if source is not None:
            return source
    return None


def scan_source(
    text: str,
    config: Optional[AnalyzerConfig] = None,
    resolver: Optional[SourceResolver] = None,
) -> ScanReport:
    """
    Extract, analyze and, for non-test classes with a resolvable companion
    test class, run the untested-field check.
    """
    config = config or AnalyzerConfig()
    parsed = extract(text)
    engine = RuleEngine(config)
    issues = engine.analyze(parsed)

    if config.detect_untested_fields and resolver is not None and parsed.class_name and not parsed.is_test_class:
        test_source = find_companion_test_source(parsed.class_name, resolver)
        if test_source is not None:
            issues.extend(engine.analyze_untested_fields(parsed, extract(test_source)))

    return ScanReport(issues=issues, parsed=parsed)


# ============================================================
# ===================== WORKSPACE FILES ======================
# ============================================================

APEX_SOURCE_EXTENSIONS: Tuple[str, ...] = (".cls", ".trigger")
_SKIPPED_DIRECTORIES = frozenset(["node_modules", ".git", ".sfdx", ".sf"])


def read_source(path: str) -> str:
    """
    Read an Apex file as UTF-8, or UTF-16 when it carries a UTF-16 BOM.
    Undecodable bytes become U+FFFD rather than aborting the scan.
    """
    with open(path, "rb") as handle:
        raw = handle.read()
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16", errors="replace")
    return raw.decode("utf-8-sig", errors="replace")


def collect_source_files(paths: List[str]) -> List[str]:
    files: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            for root, dirs, names in os.walk(path):
                dirs[:] = sorted(d for d in dirs if d not in _SKIPPED_DIRECTORIES)
                for name in sorted(names):
                    if name.lower().endswith(APEX_SOURCE_EXTENSIONS):
                        files.append(os.path.join(root, name))
        elif os.path.isfile(path):
            files.append(path)
        else:
            sys.stderr.write(f"[apexlint] Input path not found: {path}\n")
    return files


class WorkspaceResolver:
    """
    Resolves a class name to the text of `<Name>.cls` among known files.
    Apex names are case-insensitive, so lookups are too.
    """

    def __init__(self, files: List[str]) -> None:
        self._paths_by_name: Dict[str, str] = {}
        for path in files:
            stem, ext = os.path.splitext(os.path.basename(path))
            if ext.lower() == ".cls":
                self._paths_by_name.setdefault(stem.lower(), path)

    def __call__(self, class_name: str) -> Optional[str]:
        path = self._paths_by_name.get(class_name.lower())
        if path is None:
            return None
        return read_source(path)


def _sibling_classes(files: List[str]) -> List[str]:
    siblings: List[str] = []
    for directory in sorted({os.path.dirname(os.path.abspath(path)) for path in files}):
        try:
            names = sorted(os.listdir(directory))
        except OSError:
            continue
        siblings.extend(os.path.join(directory, name) for name in names if name.lower().endswith(".cls"))
    return siblings


# ============================================================
# ====================== ISSUE OUTPUT ========================
# ============================================================

def _range_to_json(source_range: SourceRange) -> Dict[str, int]:
    return {
        "line_start": source_range.line_start,
        "col_start": source_range.col_start,
        "line_end": source_range.line_end,
        "col_end": source_range.col_end,
    }


def issue_to_json_obj(issue: Issue, path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convert an Issue into a JSON-friendly dict with a stable field order.
    """
    related = None
    if issue.related is not None:
        related = {
            "location": _range_to_json(issue.related.source_range),
            "message": issue.related.message,
        }
    return {
        "kind": issue.kind,
        "severity": issue.severity,
        "message": issue.message,
        "file": path,
        "location": _range_to_json(issue.source_range),
        "related": related,
        "tool": "apexlint",
        "version": __version__,
    }


def emit_issues_json(issues_by_file: Dict[str, List[Issue]], out: Optional[str] = None) -> None:
    """
    Serialize all issues to JSON (one flat list of issue objects).
    """
    as_json = [
        issue_to_json_obj(issue, path)
        for path, issues in issues_by_file.items()
        for issue in issues
    ]
    text = json.dumps(as_json, indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for apexlint.
    Intended usage:
      apexlint analyze --config apexlint.yaml force-app/main/default/classes
    """
    parser = argparse.ArgumentParser(
        prog="apexlint",
        description="apexlint: governor-limit anti-pattern scanner for Apex",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Scan Apex classes/triggers (files or directories) and emit JSON issues.",
    )
    analyze_p.add_argument(
        "--config",
        metavar="CONFIG_YAML",
        help="YAML file with detector toggles (default: $APEXLINT_CONFIG).",
        required=False,
    )
    analyze_p.add_argument(
        "--out",
        metavar="OUT_JSON",
        help="Write issues to this JSON file instead of stdout.",
        required=False,
    )
    analyze_p.add_argument(
        "paths",
        nargs="+",
        help=".cls / .trigger files or directories to scan.",
    )

    args = parser.parse_args(argv)

    if args.command == "analyze":
        config = load_config_from_yaml(args.config or os.environ.get("APEXLINT_CONFIG"))
        files = collect_source_files(args.paths)
        resolver = WorkspaceResolver(files + _sibling_classes(files))

        issues_by_file: Dict[str, List[Issue]] = {}
        for path in files:
            try:
                text = read_source(path)
            except OSError as exc:
                sys.stderr.write(f"[apexlint] Could not read {path}: {exc}\n")
                continue
            issues_by_file[path] = scan_source(text, config, resolver).issues

        emit_issues_json(issues_by_file, out=args.out)
        total = sum(len(issues) for issues in issues_by_file.values())
        sys.stderr.write(
            f"[apexlint] Scan complete. Found {total} anti-pattern issue(s) in {len(files)} file(s).\n"
        )
        return 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
