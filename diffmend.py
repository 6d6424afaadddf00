#!/usr/bin/env python3
"""
diffmend

Recover apply-ready unified diffs from free-form language model output. diffmend isolates the
diff inside prose and markdown fences, re-derives every hunk header from the hunk body, repairs
common line-prefix mistakes, and can optionally ask git whether the result would apply.

Features:
    - Extraction of `diff --git` content from chatty, fenced, or truncated model output
    - Hunk header recomputation (old/new counts always match the hunk body)
    - Synthesis of missing `@@` headers for new and deleted files
    - Repair of blank and unprefixed hunk lines, recorded as structured repair notes
    - Non-mutating `git apply --check` with strict, -C1 and --3way strategies
    - Bounded retry pipeline driven by a caller-supplied regenerate callback
    - Lint mode reporting hunk count, prefix and blank-line problems without rewriting
    - Rich terminal reports and JSON reports for CI/CD integration

Usage:
    python diffmend.py [INPUT] [options]
    # or after installation:
    diffmend [INPUT] [options]

Basic Options:
    INPUT                   File holding raw model output ("-" or omitted reads stdin)
    -o, --output FILE       Write the normalized diff to FILE instead of stdout
    -R, --repo DIR          Run `git apply --check` against this repository
    -v, --verbose           Show every repair note in the report
    -j, --json-report FILE  Save a JSON report
    -c, --no-color          Disable colored output

Advanced Configuration:
    -s, --strategy NAME     Apply-check strategy (strict, context1, 3way); repeatable
    -T, --timeout INT       Timeout for git operations in seconds (default: 30)
    -M, --max-file-size INT Maximum input size to process in MB (default: 100)
        --keep-section-headings  Keep text after the closing `@@` of hunk headers
        --lint              Report problems in the extracted diff without rewriting it

Examples:
    # Normalize a saved model response
    python diffmend.py response.txt -o fix.diff

    # Normalize and check against a repository
    cat response.txt | python diffmend.py -R ~/src/project

    # Lint a hand-written diff
    python diffmend.py --lint change.diff

Exit Codes:
    0 - A normalized diff was produced (and passed the apply-check, when requested)
    1 - No diff found, apply-check rejected the diff, lint problems, or input errors

Version: 1.0
"""

import argparse
import hashlib
import json
import re
import subprocess
import sys

from dataclasses import dataclass, field, asdict
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import cachetools
import chardet

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

# Diagnostics go to stderr; stdout is reserved for the normalized diff
console = Console(stderr=True)


# ===== Error Information System =====

@dataclass
class ErrorInfo:
    """Structured error information for callers and retry policies."""
    code: str  # e.g., "NO_DIFF_FOUND", "APPLY_REJECTED", "PREFIX_RESTORED"
    message: str
    suggestion: str  # Recovery suggestion for agents
    context: Dict[str, Any] = field(default_factory=dict)
    recoverable: bool = True
    severity: str = "error"  # "error", "warning", "info"


# Pipeline error codes
ERROR_NO_DIFF_FOUND = "NO_DIFF_FOUND"
ERROR_APPLY_REJECTED = "APPLY_REJECTED"
ERROR_GENERATOR_FAILED = "GENERATOR_FAILED"
ERROR_GIT_TIMEOUT = "GIT_TIMEOUT"
ERROR_GIT_COMMAND_FAILED = "GIT_COMMAND_FAILED"
ERROR_REPOSITORY_NOT_FOUND = "REPOSITORY_NOT_FOUND"
ERROR_FILE_NOT_FOUND = "FILE_NOT_FOUND"
ERROR_FILE_TOO_LARGE = "FILE_TOO_LARGE"
ERROR_ENCODING_ERROR = "ENCODING_ERROR"
ERROR_INVALID_CONFIG = "INVALID_CONFIG"

# Repair notes emitted by the normalizer
REPAIR_HUNK_HEADER_RECOUNTED = "HUNK_HEADER_RECOUNTED"
REPAIR_HUNK_HEADER_SYNTHESIZED = "HUNK_HEADER_SYNTHESIZED"
REPAIR_BLANK_LINE_REWRITTEN = "BLANK_LINE_REWRITTEN"
REPAIR_PREFIX_RESTORED = "PREFIX_RESTORED"
REPAIR_START_ADJUSTED = "START_ADJUSTED"
REPAIR_EMPTY_HUNK_DROPPED = "EMPTY_HUNK_DROPPED"

# Lint findings
LINT_HUNK_COUNT_MISMATCH = "HUNK_COUNT_MISMATCH"
LINT_INVALID_LINE_PREFIX = "INVALID_LINE_PREFIX"
LINT_BLANK_LINE_IN_HUNK = "BLANK_LINE_IN_HUNK"
LINT_INVALID_HUNK_START = "INVALID_HUNK_START"
LINT_INVALID_HUNK_HEADER = "INVALID_HUNK_HEADER"

# Pipeline statuses
STATUS_APPLY_OK = "APPLY_OK"
STATUS_UNCHECKED = "UNCHECKED"
STATUS_NO_DIFF_FOUND = "NO_DIFF_FOUND"
STATUS_APPLY_REJECTED = "APPLY_REJECTED"

# Check failures that regenerating the patch cannot fix
UNRETRYABLE_CHECK_ERRORS = frozenset({ERROR_REPOSITORY_NOT_FOUND, ERROR_GIT_TIMEOUT, ERROR_GIT_COMMAND_FAILED})


class DiffMendError(Exception):
    """Base exception for diffmend errors."""

    def __init__(self, message: str, error_info: Optional[ErrorInfo] = None):
        super().__init__(message)
        self.error_info = error_info


class InputReadError(DiffMendError):
    """Error when raw model output cannot be read."""

    pass


# Configuration constants
DEFAULT_SUBPROCESS_TIMEOUT = 30  # seconds
DEFAULT_MAX_FIX_ATTEMPTS = 1
DEFAULT_CACHE_TTL = 30  # seconds
MAX_FILE_SIZE_MB = 100  # Maximum input size to load into memory
DEFAULT_EXCERPT_RADIUS = 2

DIFF_GIT_TOKEN = "diff --git"

# Extra `git apply --check` arguments per strategy, tried in this order by default
APPLY_STRATEGIES: Dict[str, List[str]] = {
    "strict": [],
    "context1": ["-C1"],
    "3way": ["--3way"],
}
DEFAULT_APPLY_STRATEGIES = ("strict", "context1", "3way")


# ===== Line Classification =====

class LineKind(Enum):
    """Closed classification of a single diff line."""

    GIT_HEADER = "git_header"
    INDEX = "index"
    EXTENDED_HEADER = "extended_header"
    OLD_FILE_HEADER = "old_file_header"
    NEW_FILE_HEADER = "new_file_header"
    HUNK_HEADER = "hunk_header"
    BINARY = "binary"
    BLANK = "blank"
    CONTEXT = "context"
    ADDITION = "addition"
    DELETION = "deletion"
    NO_NEWLINE = "no_newline"
    OTHER = "other"


HUNK_HEADER_PATTERN = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")
# "@@", "@@ @@", "@@ ... @@": a hunk boundary without usable line numbers
BARE_HUNK_MARKER_PATTERN = re.compile(r"^@@(?:\s.*)?$")
INDEX_LINE_PATTERN = re.compile(r"^index [0-9a-fA-F]+\.\.[0-9a-fA-F]+(?: [0-7]+)?\s*$")
# Handle quoted paths in diff headers (for paths with spaces)
DIFF_HEADER_PATTERN = re.compile(r'^diff --git a/(?:"(.+)"|(.+)) b/(?:"(.+)"|(.+))$')

EXTENDED_HEADER_PREFIXES = (
    "new file mode",
    "deleted file mode",
    "old mode",
    "new mode",
    "similarity index",
    "dissimilarity index",
    "rename from",
    "rename to",
    "copy from",
    "copy to",
)
BINARY_PREFIXES = ("GIT binary patch", "Binary files ")

_BODY_PREFIX_KINDS = {
    " ": LineKind.CONTEXT,
    "+": LineKind.ADDITION,
    "-": LineKind.DELETION,
    "\\": LineKind.NO_NEWLINE,
}
_BODY_KINDS = frozenset(_BODY_PREFIX_KINDS.values())


def classify_line(line: str) -> LineKind:
    """Classify one line of (possibly malformed) diff text.

    Header forms take precedence over hunk-body prefixes, so `--- a/x` is an
    OLD_FILE_HEADER here; the normalizer refines that inside hunk bodies.
    """
    if line.startswith(DIFF_GIT_TOKEN):
        return LineKind.GIT_HEADER
    if line.startswith("index "):
        return LineKind.INDEX
    if line.startswith(EXTENDED_HEADER_PREFIXES):
        return LineKind.EXTENDED_HEADER
    if line.startswith("--- "):
        return LineKind.OLD_FILE_HEADER
    if line.startswith("+++ "):
        return LineKind.NEW_FILE_HEADER
    if HUNK_HEADER_PATTERN.match(line) or BARE_HUNK_MARKER_PATTERN.match(line):
        return LineKind.HUNK_HEADER
    if line.startswith(BINARY_PREFIXES):
        return LineKind.BINARY
    if not line.strip():
        return LineKind.BLANK
    return _BODY_PREFIX_KINDS.get(line[0], LineKind.OTHER)


def hunk_line_kind(line: str) -> LineKind:
    """Tag a hunk body line by its first character alone."""
    if not line:
        return LineKind.BLANK
    return _BODY_PREFIX_KINDS.get(line[0], LineKind.OTHER)


def is_diff_line(line: str) -> bool:
    """True for anything that can plausibly belong to a unified diff."""
    return classify_line(line) is not LineKind.OTHER


def parse_hunk_header(line: str) -> Optional[Tuple[int, int, int, int, str]]:
    """Parse a numbered hunk header into (old_start, old_count, new_start, new_count, heading).

    Omitted counts default to 1, as in the unified diff format.
    """
    match = HUNK_HEADER_PATTERN.match(line)
    if not match:
        return None
    old_start = int(match.group(1))
    old_count = int(match.group(2)) if match.group(2) is not None else 1
    new_start = int(match.group(3))
    new_count = int(match.group(4)) if match.group(4) is not None else 1
    return old_start, old_count, new_start, new_count, match.group(5)


def count_hunk_lines(lines: Iterable[str]) -> Tuple[int, int]:
    """Return (old_count, new_count) for a hunk body."""
    old_count = new_count = 0
    for line in lines:
        kind = hunk_line_kind(line)
        if kind is LineKind.DELETION:
            old_count += 1
        elif kind is LineKind.ADDITION:
            new_count += 1
        elif kind is LineKind.CONTEXT:
            old_count += 1
            new_count += 1
    return old_count, new_count


def resolve_hunk_start(declared: Optional[int], count: int) -> int:
    """Pick the start line to emit for one side of a hunk.

    An undeclared start becomes 0 for an empty side and 1 otherwise. A declared
    start is kept unless the side has lines and the start is below 1, because
    `-5,0` is a valid insertion point but `-0,3` is not.
    """
    if declared is None:
        return 0 if count == 0 else 1
    if count > 0 and declared < 1:
        return 1
    return declared


def normalize_line_endings(text: str) -> str:
    """Convert CRLF and lone CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_diff_lines(text: str) -> List[str]:
    """Split diff text into lines, treating trailing empty lines as terminators."""
    lines = normalize_line_endings(text).split("\n")
    while lines and lines[-1] == "":
        lines.pop()
    return lines


def has_diff_header(text: str) -> bool:
    """The caller's no-diff-found check: extracted text must open with `diff --git`."""
    return text.startswith(DIFF_GIT_TOKEN)


def _strip_path_prefix(raw: str) -> str:
    path = raw.split("\t")[0].strip().strip('"')
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


# ===== Diff Model =====

@dataclass
class DiffHunk:
    """Represents a single diff hunk with line changes."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[str] = field(default_factory=list)
    heading: str = ""

    def header(self) -> str:
        header = f"@@ -{self.old_start},{self.old_count} +{self.new_start},{self.new_count} @@"
        if self.heading.strip():
            header += " " + self.heading.strip()
        return header


@dataclass
class FileSection:
    """Header lines for one file followed by its hunks."""

    header_lines: List[str] = field(default_factory=list)
    hunks: List[DiffHunk] = field(default_factory=list)
    is_binary: bool = False

    @property
    def path(self) -> Optional[str]:
        """Best-effort target path, preferring the b/ side."""
        for line in self.header_lines:
            match = DIFF_HEADER_PATTERN.match(line)
            if match:
                groups = match.groups()
                return groups[2] or groups[3] or groups[0] or groups[1]
        for prefix in ("+++ ", "--- "):
            for line in self.header_lines:
                if line.startswith(prefix):
                    path = _strip_path_prefix(line[len(prefix):])
                    if path and path != "/dev/null":
                        return path
        return None

    def lines(self) -> List[str]:
        out = list(self.header_lines)
        for hunk in self.hunks:
            out.append(hunk.header())
            out.extend(hunk.lines)
        return out


@dataclass
class NormalizedDiff:
    """Ordered file sections of a normalized unified diff."""

    sections: List[FileSection] = field(default_factory=list)

    @property
    def hunks(self) -> List[DiffHunk]:
        return [hunk for section in self.sections for hunk in section.hunks]

    def stats(self) -> Dict[str, int]:
        additions = deletions = 0
        for hunk in self.hunks:
            for line in hunk.lines:
                kind = hunk_line_kind(line)
                if kind is LineKind.ADDITION:
                    additions += 1
                elif kind is LineKind.DELETION:
                    deletions += 1
        return {
            "files": sum(1 for s in self.sections if s.path is not None),
            "hunks": len(self.hunks),
            "additions": additions,
            "deletions": deletions,
            "binary_files": sum(1 for s in self.sections if s.is_binary),
        }

    def to_text(self) -> str:
        lines: List[str] = []
        for section in self.sections:
            lines.extend(section.lines())
        text = "\n".join(lines)
        if text:
            text = text.rstrip("\n") + "\n"
        return text


@dataclass
class ExtractionResult:
    """Candidate diff isolated from raw model output."""

    text: str
    found: bool
    source: str = "none"  # "direct", "fenced", "none"
    dropped_lines: int = 0  # trailing non-diff lines cut off


@dataclass
class NormalizationResult:
    """Output of a single normalization pass."""

    diff: NormalizedDiff
    text: str
    notes: List[ErrorInfo] = field(default_factory=list)

    @property
    def warnings(self) -> List[ErrorInfo]:
        return [note for note in self.notes if note.severity == "warning"]


# ===== Extraction =====

class DiffExtractor:
    """Isolates the unified diff inside free-form model output.

    Extraction never fails: it only narrows the input. When no `diff --git`
    token exists the trimmed text comes back with `found=False` and the caller
    decides what to do with it.
    """

    LEADING_FENCE_PATTERN = re.compile(r"^```(?:diff|patch|git)?[ \t]*(?:\n|$)", re.IGNORECASE)
    FENCE_LINE_PATTERN = re.compile(r"^```[ \t]*(?:\n|$)", re.MULTILINE)
    FENCED_BLOCK_PATTERN = re.compile(r"```[^\n`]*\n(.*?)```", re.DOTALL)

    def extract(self, raw: str) -> ExtractionResult:
        if not raw:
            return ExtractionResult(text="", found=False)

        normalized = normalize_line_endings(raw)
        text = self._strip_fences(normalized)

        index = text.find(DIFF_GIT_TOKEN)
        if index != -1:
            text = text[index:]

        source = "direct"
        # Unreachable while _strip_fences leaves every `diff --git` token in place
        if not has_diff_header(text):
            fenced = self._find_fenced_diff(normalized)
            if fenced is None:
                return ExtractionResult(text=text, found=False)
            text = fenced
            source = "fenced"

        text, dropped = self._truncate_trailing(text)
        return ExtractionResult(text=text, found=True, source=source, dropped_lines=dropped)

    def _strip_fences(self, text: str) -> str:
        text = self.LEADING_FENCE_PATTERN.sub("", text, count=1)
        text = self.FENCE_LINE_PATTERN.sub("", text)
        # Keep trailing spaces: a final " " is a blank context line
        return text.lstrip().rstrip("\n")

    def _find_fenced_diff(self, text: str) -> Optional[str]:
        for match in self.FENCED_BLOCK_PATTERN.finditer(text):
            block = match.group(1).lstrip().rstrip("\n")
            index = block.find(DIFF_GIT_TOKEN)
            if index != -1:
                return block[index:]
        return None

    def _truncate_trailing(self, text: str) -> Tuple[str, int]:
        """Cut everything after the last line that still looks like diff content."""
        lines = text.split("\n")
        for index in range(len(lines) - 1, -1, -1):
            if is_diff_line(lines[index]):
                return "\n".join(lines[: index + 1]), len(lines) - index - 1
        return text, 0


def extract_diff(raw: str) -> str:
    """Return the longest plausible diff substring of raw model output."""
    return DiffExtractor().extract(raw).text


# ===== Normalization =====

@dataclass
class _PendingHunk:
    old_start: Optional[int]
    new_start: Optional[int]
    declared_old_count: Optional[int] = None
    declared_new_count: Optional[int] = None
    heading: str = ""
    synthesized: bool = False
    source_line: int = 0
    lines: List[str] = field(default_factory=list)


@dataclass
class _PassState:
    """Accumulator threaded through one normalization pass."""

    sections: List[FileSection] = field(default_factory=lambda: [FileSection()])
    hunk: Optional[_PendingHunk] = None
    after_new_file_header: bool = False
    in_binary: bool = False
    notes: List[ErrorInfo] = field(default_factory=list)

    @property
    def section(self) -> FileSection:
        return self.sections[-1]

    def open_section(self) -> None:
        if self.section.header_lines or self.section.hunks:
            self.sections.append(FileSection())

    def header_section(self) -> FileSection:
        """Section that may take another header line without moving it above earlier hunks."""
        if self.section.hunks:
            self.sections.append(FileSection())
        return self.section

    def note(self, code: str, message: str, suggestion: str, severity: str = "info", **context: Any) -> None:
        self.notes.append(
            ErrorInfo(
                code=code,
                message=message,
                suggestion=suggestion,
                context=context,
                recoverable=True,
                severity=severity,
            )
        )


class DiffNormalizer:
    """Rebuilds a unified diff so every hunk header matches its body.

    The pass is a small state machine (outside a hunk / inside a hunk) over
    the input lines with one line of lookahead. All state lives in a
    `_PassState` created per call, so a normalizer instance can be shared.
    """

    def __init__(self, keep_section_headings: bool = False):
        self.keep_section_headings = keep_section_headings

    def normalize(self, text: str) -> NormalizationResult:
        lines = split_diff_lines(text)
        state = _PassState()
        for index, line in enumerate(lines):
            next_line = lines[index + 1] if index + 1 < len(lines) else None
            self._step(state, index + 1, line, next_line)
        self._flush(state)

        diff = NormalizedDiff(sections=[s for s in state.sections if s.header_lines or s.hunks])
        return NormalizationResult(diff=diff, text=diff.to_text(), notes=state.notes)

    def _step(self, state: _PassState, line_no: int, line: str, next_line: Optional[str]) -> None:
        kind = classify_line(line)

        if state.in_binary:
            if kind is not LineKind.GIT_HEADER:
                state.section.header_lines.append(line)
                return
            state.in_binary = False

        if state.hunk is not None:
            kind = self._refine_in_hunk(kind, line, next_line)

        if kind in (LineKind.GIT_HEADER, LineKind.INDEX, LineKind.OLD_FILE_HEADER):
            self._flush(state)
            if kind is LineKind.GIT_HEADER:
                state.open_section()
            state.after_new_file_header = False
            state.header_section().header_lines.append(line)
            return

        if kind is LineKind.NEW_FILE_HEADER:
            self._flush(state)
            state.header_section().header_lines.append(line)
            state.after_new_file_header = True
            return

        if kind is LineKind.HUNK_HEADER:
            self._flush(state)
            state.after_new_file_header = False
            state.hunk = self._open_hunk(line, line_no)
            return

        if state.hunk is None:
            if state.after_new_file_header and kind in (LineKind.ADDITION, LineKind.DELETION):
                # New or deleted file whose generator skipped the @@ line
                state.hunk = _PendingHunk(old_start=0, new_start=0, synthesized=True, source_line=line_no)
                state.after_new_file_header = False
            else:
                self._pass_through(state, kind, line)
                return

        self._append_body_line(state, kind, line, line_no)

    def _refine_in_hunk(self, kind: LineKind, line: str, next_line: Optional[str]) -> LineKind:
        """Reinterpret header-looking lines that are really hunk content."""
        if kind is LineKind.OLD_FILE_HEADER:
            if next_line is None or not next_line.startswith("+++ "):
                return LineKind.DELETION
        elif kind is LineKind.NEW_FILE_HEADER:
            return LineKind.ADDITION
        elif kind is LineKind.INDEX:
            if not INDEX_LINE_PATTERN.match(line):
                return LineKind.OTHER
        elif kind in (LineKind.EXTENDED_HEADER, LineKind.BINARY):
            return LineKind.OTHER
        return kind

    def _open_hunk(self, line: str, line_no: int) -> _PendingHunk:
        parsed = parse_hunk_header(line)
        if parsed is None:
            return _PendingHunk(old_start=None, new_start=None, source_line=line_no)
        old_start, old_count, new_start, new_count, heading = parsed
        return _PendingHunk(
            old_start=old_start,
            new_start=new_start,
            declared_old_count=old_count,
            declared_new_count=new_count,
            heading=heading if self.keep_section_headings else "",
            source_line=line_no,
        )

    def _pass_through(self, state: _PassState, kind: LineKind, line: str) -> None:
        if kind is LineKind.BLANK:
            return
        section = state.header_section()
        if kind is LineKind.BINARY:
            section.is_binary = True
            if line.startswith("GIT binary patch"):
                state.in_binary = True
        state.after_new_file_header = False
        section.header_lines.append(line)

    def _append_body_line(self, state: _PassState, kind: LineKind, line: str, line_no: int) -> None:
        hunk = state.hunk
        if kind is LineKind.BLANK:
            if line != " ":
                state.note(
                    REPAIR_BLANK_LINE_REWRITTEN,
                    "Blank hunk line rewritten as an empty context line",
                    "No action needed",
                    line=line_no,
                )
            hunk.lines.append(" ")
        elif kind in _BODY_KINDS:
            hunk.lines.append(line)
        else:
            state.note(
                REPAIR_PREFIX_RESTORED,
                f"Unprefixed hunk line treated as context: {line[:60]!r}",
                "Check that this line was not an addition or deletion that lost its prefix",
                severity="warning",
                line=line_no,
            )
            hunk.lines.append(" " + line)

    def _flush(self, state: _PassState) -> None:
        pending = state.hunk
        if pending is None:
            return
        state.hunk = None

        if not pending.lines:
            state.note(
                REPAIR_EMPTY_HUNK_DROPPED,
                "Hunk header without a body was dropped",
                "Regenerate the hunk if it was meant to carry changes",
                severity="warning",
                line=pending.source_line,
            )
            return

        old_count, new_count = count_hunk_lines(pending.lines)
        old_start = resolve_hunk_start(pending.old_start, old_count)
        new_start = resolve_hunk_start(pending.new_start, new_count)

        if pending.synthesized or pending.declared_old_count is None:
            state.note(
                REPAIR_HUNK_HEADER_SYNTHESIZED,
                f"Synthesized hunk header @@ -{old_start},{old_count} +{new_start},{new_count} @@",
                "No action needed",
                line=pending.source_line,
            )
        else:
            if (pending.declared_old_count, pending.declared_new_count) != (old_count, new_count):
                state.note(
                    REPAIR_HUNK_HEADER_RECOUNTED,
                    "Hunk header counts did not match the hunk body",
                    "No action needed",
                    line=pending.source_line,
                    declared=[pending.declared_old_count, pending.declared_new_count],
                    actual=[old_count, new_count],
                )
            if (pending.old_start, pending.new_start) != (old_start, new_start):
                state.note(
                    REPAIR_START_ADJUSTED,
                    "Hunk start line adjusted to a valid position",
                    "No action needed",
                    line=pending.source_line,
                    declared=[pending.old_start, pending.new_start],
                    actual=[old_start, new_start],
                )

        state.section.hunks.append(
            DiffHunk(
                old_start=old_start,
                old_count=old_count,
                new_start=new_start,
                new_count=new_count,
                lines=pending.lines,
                heading=pending.heading,
            )
        )


def normalize_diff(text: str, keep_section_headings: bool = False) -> str:
    """Return an apply-ready rendition of a candidate unified diff."""
    return DiffNormalizer(keep_section_headings).normalize(text).text


# ===== Linting =====

def lint_diff(diff_text: str) -> List[ErrorInfo]:
    """Report unified-diff invariant violations without repairing anything."""
    issues: List[ErrorInfo] = []
    lines = split_diff_lines(diff_text)
    header: Optional[Tuple[int, str]] = None
    body: List[Tuple[int, str]] = []
    in_binary = False

    for index, line in enumerate(lines):
        kind = classify_line(line)
        if in_binary:
            if kind is not LineKind.GIT_HEADER:
                continue
            in_binary = False
        if header is not None:
            next_line = lines[index + 1] if index + 1 < len(lines) else ""
            ends_hunk = (
                kind in (LineKind.GIT_HEADER, LineKind.HUNK_HEADER)
                or (kind is LineKind.OLD_FILE_HEADER and next_line.startswith("+++ "))
                or (kind is LineKind.INDEX and INDEX_LINE_PATTERN.match(line) is not None)
            )
            if not ends_hunk:
                body.append((index + 1, line))
                continue
            _lint_hunk(header, body, issues)
            header = None
            body = []
        if kind is LineKind.HUNK_HEADER:
            header = (index + 1, line)
        elif line.startswith("GIT binary patch"):
            in_binary = True

    if header is not None:
        _lint_hunk(header, body, issues)
    return issues


def _lint_hunk(header: Tuple[int, str], body: List[Tuple[int, str]], issues: List[ErrorInfo]) -> None:
    header_line_no, header_line = header
    parsed = parse_hunk_header(header_line)
    if parsed is None:
        issues.append(
            ErrorInfo(
                code=LINT_INVALID_HUNK_HEADER,
                message=f"Hunk header has no line numbers: {header_line!r}",
                suggestion="Run the diff through the normalizer to synthesize a header",
                context={"line": header_line_no},
            )
        )
        return

    old_start, declared_old, new_start, declared_new, _ = parsed
    valid_lines = []
    for line_no, line in body:
        kind = hunk_line_kind(line)
        if kind is LineKind.BLANK:
            issues.append(
                ErrorInfo(
                    code=LINT_BLANK_LINE_IN_HUNK,
                    message="Empty line inside hunk body",
                    suggestion="Blank source lines must be written as a single space",
                    context={"line": line_no},
                )
            )
        elif kind is LineKind.OTHER:
            issues.append(
                ErrorInfo(
                    code=LINT_INVALID_LINE_PREFIX,
                    message=f"Hunk line has no valid prefix: {line[:60]!r}",
                    suggestion="Prefix the line with ' ', '+', '-' or '\\'",
                    context={"line": line_no},
                )
            )
        else:
            valid_lines.append(line)

    old_count, new_count = count_hunk_lines(valid_lines)
    if (declared_old, declared_new) != (old_count, new_count):
        issues.append(
            ErrorInfo(
                code=LINT_HUNK_COUNT_MISMATCH,
                message=(
                    f"Header declares -{declared_old} +{declared_new} lines "
                    f"but body has -{old_count} +{new_count}"
                ),
                suggestion="Recount the hunk or run it through the normalizer",
                context={
                    "line": header_line_no,
                    "declared": [declared_old, declared_new],
                    "actual": [old_count, new_count],
                },
            )
        )
    for side, start, count in (("old", old_start, old_count), ("new", new_start, new_count)):
        if count > 0 and start < 1:
            issues.append(
                ErrorInfo(
                    code=LINT_INVALID_HUNK_START,
                    message=f"Hunk {side} start is {start} but the {side} side has {count} line(s)",
                    suggestion="Start lines are 1-based whenever the side is non-empty",
                    context={"line": header_line_no, "side": side},
                )
            )


# ===== Apply-check =====

@dataclass
class GitResult:
    """Lightweight wrapper for git command results."""

    ok: bool
    stdout: str
    stderr: str
    returncode: int


@dataclass
class ApplyCheckResult:
    """Outcome of `git apply --check` over one or more strategies."""

    ok: bool
    strategy: Optional[str] = None
    stderr: str = ""
    returncode: int = 0
    strategies_tried: List[str] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    error_info: Optional[ErrorInfo] = None


CORRUPT_PATCH_PATTERN = re.compile(r"corrupt patch at line (\d+)")
PATCH_FAILED_PATTERN = re.compile(r"^error: patch failed: (?P<path>.+):(?P<line>\d+)$")
DOES_NOT_APPLY_PATTERN = re.compile(r"^error: (?P<path>.+): patch does not apply$")
MISSING_FILE_PATTERN = re.compile(
    r"^error: (?P<path>.+): (?:does not exist in index|No such file or directory)$"
)
ALREADY_EXISTS_PATTERN = re.compile(r"^error: (?P<path>.+): already exists in (?:index|working directory)$")


def parse_apply_errors(output: str) -> List[Dict[str, Any]]:
    """Parse `git apply` error text into structured failure entries."""
    entries: List[Dict[str, Any]] = []
    if not output:
        return entries
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = CORRUPT_PATCH_PATTERN.search(line)
        if match:
            entries.append({"reason": "corrupt_patch", "line": int(match.group(1))})
            continue
        match = PATCH_FAILED_PATTERN.match(line)
        if match:
            entries.append(
                {"reason": "patch_failed", "path": match.group("path"), "line": int(match.group("line"))}
            )
            continue
        match = DOES_NOT_APPLY_PATTERN.match(line)
        if match:
            entries.append({"reason": "does_not_apply", "path": match.group("path")})
            continue
        match = MISSING_FILE_PATTERN.match(line)
        if match:
            entries.append({"reason": "missing_file", "path": match.group("path")})
            continue
        match = ALREADY_EXISTS_PATTERN.match(line)
        if match:
            entries.append({"reason": "already_exists", "path": match.group("path")})
            continue
        if "No valid patches in input" in line:
            entries.append({"reason": "no_valid_patches"})
    return entries


def patch_excerpt(patch: str, line_number: int, radius: int = DEFAULT_EXCERPT_RADIUS) -> str:
    """Render numbered patch lines around a reported failure line."""
    lines = patch.split("\n")
    line_number = max(1, line_number)
    start = max(0, line_number - 1 - radius)
    end = min(len(lines), line_number + radius)
    return "\n".join(f"{start + i + 1:>3}| {line}" for i, line in enumerate(lines[start:end]))


class GitApplyChecker:
    """Runs `git apply --check` with fallback strategies, caching passing results."""

    def __init__(
        self,
        repo_path: str = ".",
        timeout: int = DEFAULT_SUBPROCESS_TIMEOUT,
        strategies: Iterable[str] = DEFAULT_APPLY_STRATEGIES,
        cache_ttl: int = DEFAULT_CACHE_TTL,
    ):
        self.repo_path = Path(repo_path)
        self.timeout = timeout
        self.strategies = list(strategies)
        unknown = [s for s in self.strategies if s not in APPLY_STRATEGIES]
        if unknown or not self.strategies:
            raise ValueError(f"Unknown or empty apply strategies: {unknown or self.strategies}")
        self._result_cache: cachetools.TTLCache[str, GitResult] = cachetools.TTLCache(
            maxsize=128, ttl=cache_ttl
        )
        self._cache_stats = {"hits": 0, "misses": 0, "total_requests": 0}

    def check(self, patch_text: str) -> ApplyCheckResult:
        """Check whether the patch applies, trying each strategy in order."""
        if not (self.repo_path / ".git").exists():
            message = f"Not a git repository: {self.repo_path}"
            return ApplyCheckResult(
                ok=False,
                stderr=message,
                returncode=128,
                error_info=ErrorInfo(
                    code=ERROR_REPOSITORY_NOT_FOUND,
                    message=message,
                    suggestion="Point the checker at the root of a git working tree",
                    context={"repo_path": str(self.repo_path)},
                    recoverable=False,
                ),
            )

        tried: List[str] = []
        first_failure: Optional[GitResult] = None
        for strategy in self.strategies:
            tried.append(strategy)
            result = self._run_check(strategy, patch_text)
            if result.ok:
                return ApplyCheckResult(ok=True, strategy=strategy, stderr=result.stderr, strategies_tried=tried)
            if first_failure is None:
                first_failure = result
            if result.returncode in (124, 127):
                # Timeouts and a missing git binary will not improve with another strategy
                first_failure = result
                break

        stderr = (first_failure.stderr or first_failure.stdout or "git apply --check failed").strip()
        return ApplyCheckResult(
            ok=False,
            stderr=stderr,
            returncode=first_failure.returncode,
            strategies_tried=tried,
            failures=parse_apply_errors(stderr),
            error_info=self._error_info_for(first_failure, stderr),
        )

    def _error_info_for(self, result: GitResult, stderr: str) -> ErrorInfo:
        if result.returncode == 124:
            return ErrorInfo(
                code=ERROR_GIT_TIMEOUT,
                message=stderr,
                suggestion="Increase the timeout or check the repository for locks",
                context={"timeout": self.timeout},
            )
        if result.returncode == 127:
            return ErrorInfo(
                code=ERROR_GIT_COMMAND_FAILED,
                message=stderr,
                suggestion="Ensure git is installed and on PATH",
                recoverable=False,
            )
        return ErrorInfo(
            code=ERROR_APPLY_REJECTED,
            message="Patch does not apply cleanly",
            suggestion="Regenerate the patch using the error text and the current file contents",
            context={"stderr": stderr},
        )

    def _run_check(self, strategy: str, patch_text: str) -> GitResult:
        cmd = ["git", "apply", "--check"] + APPLY_STRATEGIES[strategy] + ["-"]
        digest = hashlib.sha1(patch_text.encode("utf-8")).hexdigest()
        cache_key = f"{self.repo_path}:{strategy}:{digest}"

        self._cache_stats["total_requests"] += 1
        if cache_key in self._result_cache:
            self._cache_stats["hits"] += 1
            return self._result_cache[cache_key]
        self._cache_stats["misses"] += 1

        try:
            result = subprocess.run(
                cmd,
                input=patch_text,
                capture_output=True,
                text=True,
                cwd=self.repo_path,
                timeout=self.timeout,
                check=False,  # Don't raise on non-zero exit
            )
        except subprocess.TimeoutExpired:
            console.print(f"[red]Warning:[/red] Git command timed out: {' '.join(cmd)}")
            return GitResult(ok=False, stdout="", stderr=f"Command timed out after {self.timeout}s", returncode=124)
        except (subprocess.SubprocessError, OSError) as e:
            console.print(f"[red]Warning:[/red] Git command failed: {' '.join(cmd)}: {escape(str(e))}")
            return GitResult(ok=False, stdout="", stderr=str(e), returncode=127)

        git_result = GitResult(
            ok=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            returncode=result.returncode,
        )
        # Only passing checks are cached; a rejected patch may apply after the tree changes
        if git_result.ok:
            self._result_cache[cache_key] = git_result
        return git_result

    def get_cache_stats(self) -> Dict[str, Any]:
        total_requests = self._cache_stats["total_requests"]
        return {
            "cached_entries": len(self._result_cache),
            "maxsize": self._result_cache.maxsize,
            "ttl": self._result_cache.ttl,
            "cache_hits": self._cache_stats["hits"],
            "cache_misses": self._cache_stats["misses"],
            "cache_hit_ratio": self._cache_stats["hits"] / total_requests if total_requests else 0.0,
            "total_requests": total_requests,
        }

    def invalidate_cache(self) -> int:
        count = len(self._result_cache)
        self._result_cache.clear()
        return count


# ===== Configuration =====

@dataclass
class Config:
    """Configuration for diffmend with validation.

    Predefined profiles:
    - Config.strict_mode(): only the exact `git apply --check`
    - Config.lenient_mode(): every strategy and more regeneration attempts
    - Config.fast_mode(): exact check, no regeneration, smaller inputs
    """

    input_file: str = "-"
    output_file: Optional[str] = None
    repo_path: Optional[str] = None
    verbose: bool = False
    json_report_file: Optional[str] = None
    no_color: bool = False
    keep_section_headings: bool = False
    lint_only: bool = False
    apply_strategies: List[str] = field(default_factory=lambda: list(DEFAULT_APPLY_STRATEGIES))
    max_fix_attempts: int = field(default=DEFAULT_MAX_FIX_ATTEMPTS)
    timeout: int = field(default=DEFAULT_SUBPROCESS_TIMEOUT)
    max_file_size: int = field(default=MAX_FILE_SIZE_MB)
    cache_ttl: int = field(default=DEFAULT_CACHE_TTL)

    def __post_init__(self):
        """Validate configuration values."""
        if not self.apply_strategies:
            raise ValueError("At least one apply strategy is required")

        unknown = [s for s in self.apply_strategies if s not in APPLY_STRATEGIES]
        if unknown:
            raise ValueError(
                f"Unknown apply strategies {unknown}; choose from {', '.join(APPLY_STRATEGIES)}"
            )

        if self.max_fix_attempts < 0:
            raise ValueError(f"Max fix attempts must be non-negative, got {self.max_fix_attempts}")

        if self.timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {self.timeout}")

        if self.max_file_size <= 0:
            raise ValueError(f"Max file size must be positive, got {self.max_file_size}")

        if self.cache_ttl < 0:
            raise ValueError(f"Cache TTL must be non-negative, got {self.cache_ttl}")

    @classmethod
    def strict_mode(cls, **overrides) -> "Config":
        """Exact apply-check only, with a longer timeout.

        Example:
            config = Config.strict_mode(repo_path="/path/to/repo")
        """
        defaults = {
            "apply_strategies": ["strict"],
            "max_fix_attempts": 1,
            "timeout": 60,
        }
        defaults.update(overrides)
        return cls(**defaults)

    @classmethod
    def lenient_mode(cls, **overrides) -> "Config":
        """Every apply strategy and up to three regeneration attempts."""
        defaults = {
            "apply_strategies": list(DEFAULT_APPLY_STRATEGIES),
            "max_fix_attempts": 3,
            "timeout": 30,
        }
        defaults.update(overrides)
        return cls(**defaults)

    @classmethod
    def fast_mode(cls, **overrides) -> "Config":
        """Exact check, no regeneration, short timeout and a 50MB input limit."""
        defaults = {
            "apply_strategies": ["strict"],
            "max_fix_attempts": 0,
            "timeout": 15,
            "max_file_size": 50,
        }
        defaults.update(overrides)
        return cls(**defaults)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        """Create Config from parsed command line arguments."""
        return cls(
            input_file=args.input,
            output_file=args.output,
            repo_path=args.repo,
            verbose=args.verbose,
            json_report_file=getattr(args, "json_report", None),
            no_color=args.no_color,
            keep_section_headings=getattr(args, "keep_section_headings", False),
            lint_only=getattr(args, "lint", False),
            apply_strategies=args.strategy or list(DEFAULT_APPLY_STRATEGIES),
            timeout=args.timeout,
            max_file_size=args.max_file_size,
        )


# Rich-based styling functions
def print_colored(text: str, color: str, **kwargs):
    """Print colored message using Rich markup."""
    console.print(f"[bold {color}]{text}[/bold {color}]", **kwargs)


def print_success(text: str, **kwargs):
    """Print success message in green."""
    print_colored(text, "green", **kwargs)


def print_warning(text: str, **kwargs):
    """Print warning message in yellow."""
    print_colored(text, "yellow", **kwargs)


def print_error(text: str, **kwargs):
    """Print error message in red."""
    print_colored(text, "red", **kwargs)


# ===== Input =====

@lru_cache(maxsize=128)
def detect_file_encoding(file_path: str) -> str:
    """Detect file encoding using chardet with LRU caching."""
    try:
        file_path_obj = Path(file_path)
        if not file_path_obj.exists():
            return "utf-8"
    except OSError:
        return "utf-8"

    try:
        with open(file_path, "rb") as f:
            raw_data = f.read(8192)  # Read first 8KB for detection
    except OSError:
        return "utf-8"

    detected = chardet.detect(raw_data)
    if detected and detected["encoding"] and detected["confidence"] > 0.7:
        encoding = detected["encoding"].lower()
        # Map common aliases
        encoding_map = {
            "utf8": "utf-8",
            "utf-8-sig": "utf-8",
            "ascii": "utf-8",
        }
        return encoding_map.get(encoding, encoding)

    return "utf-8"  # Default fallback


def read_file_with_encoding(file_path: str) -> str:
    """Read file content with automatic encoding detection."""
    path_obj = Path(file_path)
    encoding = detect_file_encoding(str(path_obj))
    return path_obj.read_text(encoding=encoding, errors="replace")


def read_text_input(source: str, max_file_size_mb: int = MAX_FILE_SIZE_MB) -> str:
    """Read raw model output from a file path, or stdin when source is "-"."""
    if source == "-":
        return sys.stdin.read()

    path = Path(source)
    if not path.is_file():
        raise InputReadError(
            f"Input file not found: {source}",
            ErrorInfo(
                code=ERROR_FILE_NOT_FOUND,
                message=f"Input file not found: {source}",
                suggestion="Pass a path to saved model output, or '-' to read stdin",
                context={"input_file": source},
            ),
        )

    file_size_mb = path.stat().st_size / (1024 * 1024)
    if file_size_mb > max_file_size_mb:
        raise InputReadError(
            f"Input file too large ({file_size_mb:.1f}MB > {max_file_size_mb}MB): {source}",
            ErrorInfo(
                code=ERROR_FILE_TOO_LARGE,
                message=f"Input file too large ({file_size_mb:.1f}MB)",
                suggestion="Raise --max-file-size or trim the input",
                context={"input_file": source, "size_mb": round(file_size_mb, 1)},
            ),
        )

    try:
        return read_file_with_encoding(source)
    except (OSError, LookupError) as e:
        raise InputReadError(
            f"Could not read input file {source}: {e}",
            ErrorInfo(
                code=ERROR_ENCODING_ERROR,
                message=f"Could not read input file: {e}",
                suggestion="Re-save the file as UTF-8",
                context={"input_file": source, "error_type": type(e).__name__},
            ),
        ) from e


def split_response_content(content: Iterable[Dict[str, Any]]) -> Tuple[str, str]:
    """Split model response content blocks into (thinking, text).

    Blocks look like {"type": "thinking", "thinking": ...} or {"type": "text", "text": ...};
    anything else is ignored.
    """
    thinking = ""
    text = ""
    for block in content:
        if block.get("type") == "thinking" and isinstance(block.get("thinking"), str):
            thinking += block["thinking"]
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            text += block["text"]
    return thinking.strip(), text


# ===== Retry Pipeline =====

@dataclass
class AttemptRecord:
    """One extract/normalize/check round."""

    attempt: int
    extracted: str
    patch: str
    found: bool
    check: Optional[ApplyCheckResult] = None
    error_info: Optional[ErrorInfo] = None


@dataclass
class PipelineResult:
    """Final outcome of a pipeline run."""

    ok: bool
    status: str
    patch: str = ""
    extraction: Optional[ExtractionResult] = None
    diff: Optional[NormalizedDiff] = None
    notes: List[ErrorInfo] = field(default_factory=list)
    attempts: List[AttemptRecord] = field(default_factory=list)
    apply_error: Optional[str] = None
    error_info: Optional[ErrorInfo] = None


def _no_diff_error_info(extracted: str) -> ErrorInfo:
    return ErrorInfo(
        code=ERROR_NO_DIFF_FOUND,
        message="Model output does not contain a 'diff --git' header",
        suggestion="Ask the generator to output only a raw git diff",
        context={"preview": extracted[:200], "length": len(extracted)},
    )


class PatchPipeline:
    """Extract, normalize and optionally apply-check model output, with bounded regeneration.

    `regenerate(patch, error_text)` is called with the last failing patch and
    git's error text, and must return fresh raw model output. Attempts run
    strictly one after another.
    """

    def __init__(
        self,
        checker: Optional[GitApplyChecker] = None,
        regenerate: Optional[Callable[[str, str], str]] = None,
        max_fix_attempts: int = DEFAULT_MAX_FIX_ATTEMPTS,
        keep_section_headings: bool = False,
    ):
        self.checker = checker
        self.regenerate = regenerate
        self.max_fix_attempts = max_fix_attempts
        self.extractor = DiffExtractor()
        self.normalizer = DiffNormalizer(keep_section_headings=keep_section_headings)

    @classmethod
    def from_config(
        cls, config: Config, regenerate: Optional[Callable[[str, str], str]] = None
    ) -> "PatchPipeline":
        checker = None
        if config.repo_path:
            checker = GitApplyChecker(
                repo_path=config.repo_path,
                timeout=config.timeout,
                strategies=config.apply_strategies,
                cache_ttl=config.cache_ttl,
            )
        return cls(
            checker=checker,
            regenerate=regenerate,
            max_fix_attempts=config.max_fix_attempts,
            keep_section_headings=config.keep_section_headings,
        )

    def prepare(self, raw_text: str) -> Tuple[ExtractionResult, Optional[NormalizationResult]]:
        """Extract and normalize; the normalization is None when no diff was found."""
        extraction = self.extractor.extract(raw_text)
        if not extraction.found:
            return extraction, None
        return extraction, self.normalizer.normalize(extraction.text)

    def run(self, raw_text: str) -> PipelineResult:
        extraction, normalized = self.prepare(raw_text)
        if normalized is None:
            error_info = _no_diff_error_info(extraction.text)
            return PipelineResult(
                ok=False,
                status=STATUS_NO_DIFF_FOUND,
                extraction=extraction,
                attempts=[AttemptRecord(0, extraction.text, "", False, error_info=error_info)],
                error_info=error_info,
            )

        patch = normalized.text
        first = AttemptRecord(0, extraction.text, patch, True)
        attempts = [first]

        def finish(ok: bool, status: str, **kwargs) -> PipelineResult:
            fields = {
                "patch": patch,
                "extraction": extraction,
                "diff": normalized.diff,
                "notes": normalized.notes,
            }
            fields.update(kwargs)
            return PipelineResult(ok=ok, status=status, attempts=attempts, **fields)

        if self.checker is None:
            return finish(True, STATUS_UNCHECKED)

        check = self.checker.check(patch)
        first.check = check
        if check.ok:
            return finish(True, STATUS_APPLY_OK)

        last_check = check
        failing_patch = patch
        for attempt in range(1, self.max_fix_attempts + 1):
            failure_code = last_check.error_info.code if last_check.error_info else None
            if self.regenerate is None or failure_code in UNRETRYABLE_CHECK_ERRORS:
                break
            try:
                fix_text = self.regenerate(failing_patch, last_check.stderr)
            except Exception as e:
                attempts.append(
                    AttemptRecord(
                        attempt,
                        "",
                        "",
                        False,
                        error_info=ErrorInfo(
                            code=ERROR_GENERATOR_FAILED,
                            message=f"Regeneration failed: {e}",
                            suggestion="Check the generator callback and retry later",
                            context={"error_type": type(e).__name__, "attempt": attempt},
                        ),
                    )
                )
                break

            fix_extraction, fix_normalized = self.prepare(fix_text or "")
            if fix_normalized is None:
                attempts.append(
                    AttemptRecord(
                        attempt,
                        fix_extraction.text,
                        "",
                        False,
                        error_info=_no_diff_error_info(fix_extraction.text),
                    )
                )
                continue

            fix_check = self.checker.check(fix_normalized.text)
            attempts.append(AttemptRecord(attempt, fix_extraction.text, fix_normalized.text, True, check=fix_check))
            if fix_check.ok:
                return finish(
                    True,
                    STATUS_APPLY_OK,
                    patch=fix_normalized.text,
                    extraction=fix_extraction,
                    diff=fix_normalized.diff,
                    notes=fix_normalized.notes,
                )
            failing_patch = fix_normalized.text
            last_check = fix_check

        # No fix passed: keep the first normalized patch, it is no worse than the fixes
        return finish(
            False,
            STATUS_APPLY_REJECTED,
            apply_error=last_check.stderr,
            error_info=last_check.error_info,
        )


def mend_from_content(
    raw_text: str,
    repo_path: Optional[str] = None,
    regenerate: Optional[Callable[[str, str], str]] = None,
    max_fix_attempts: int = DEFAULT_MAX_FIX_ATTEMPTS,
    apply_strategies: Optional[List[str]] = None,
    timeout: int = DEFAULT_SUBPROCESS_TIMEOUT,
    keep_section_headings: bool = False,
) -> Dict[str, Any]:
    """Run the full pipeline on raw model output and return a JSON-safe dict for agent workflows.

    Args:
        raw_text: Raw model output, possibly with prose and markdown fences
        repo_path: Repository to apply-check against (no check when None)
        regenerate: Callback (patch, error_text) -> new raw model output
        max_fix_attempts: Maximum regenerate calls after a failed check
        apply_strategies: Strategy names to try, in order
        timeout: Timeout for git operations in seconds
        keep_section_headings: Keep text after the closing @@ of hunk headers

    Returns:
        Dict with the normalized patch, status and structured errors
    """
    try:
        config = Config(
            repo_path=repo_path,
            max_fix_attempts=max_fix_attempts,
            apply_strategies=apply_strategies or list(DEFAULT_APPLY_STRATEGIES),
            timeout=timeout,
            keep_section_headings=keep_section_headings,
        )
    except ValueError as e:
        error_info = ErrorInfo(
            code=ERROR_INVALID_CONFIG,
            message=str(e),
            suggestion="Fix the arguments and call again",
            recoverable=False,
        )
        return {"success": False, "status": ERROR_INVALID_CONFIG, "error": str(e), "error_info": asdict(error_info)}

    result = PatchPipeline.from_config(config, regenerate=regenerate).run(raw_text)
    return {
        "success": result.ok,
        "status": result.status,
        "patch": result.patch,
        "stats": result.diff.stats() if result.diff else {},
        "apply_error": result.apply_error,
        "error_info": asdict(result.error_info) if result.error_info else None,
        "notes": [asdict(note) for note in result.notes],
        "attempt_count": len(result.attempts),
    }


# ===== Reporting =====

class ReportGenerator:
    """Renders pipeline and lint results."""

    MAX_NOTES = 5

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def generate_console_report(self, result: PipelineResult) -> None:
        console.print()
        console.print(
            Panel(
                "[bold white]Diff Normalization Report[/bold white]",
                style="bold cyan",
                padding=(0, 2),
            )
        )

        if result.status in (STATUS_APPLY_OK, STATUS_UNCHECKED):
            status_style = "bold green"
        elif result.status == STATUS_APPLY_REJECTED:
            status_style = "bold yellow"
        else:
            status_style = "bold red"

        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Label", style="dim")
        table.add_column("Value")
        table.add_row("Status:", f"[{status_style}]{result.status}[/{status_style}]")
        if result.extraction is not None:
            table.add_row("Source:", result.extraction.source)
            if result.extraction.dropped_lines:
                table.add_row("Trailing lines dropped:", str(result.extraction.dropped_lines))
        if result.diff is not None:
            stats = result.diff.stats()
            table.add_row("Files:", f"[bold magenta]{stats['files']}[/bold magenta]")
            table.add_row("Hunks:", str(stats["hunks"]))
            table.add_row(
                "Changes:",
                f"[green]+{stats['additions']}[/green] [red]-{stats['deletions']}[/red]",
            )
        table.add_row("Repairs:", str(len(result.notes)))
        table.add_row("Attempts:", str(len(result.attempts)))
        console.print(table)

        self._print_notes(result.notes)

        if result.status == STATUS_APPLY_REJECTED and result.apply_error:
            self._print_apply_error(result)
        elif result.error_info is not None:
            console.print(f"\n[bold red][ERROR][/bold red] {escape(result.error_info.message)}")
            console.print(f"   [dim]{escape(result.error_info.suggestion)}[/dim]")

        console.print()
        if result.ok:
            console.print(
                Panel(
                    "[bold white] [SUCCESS] [/bold white] Diff is well-formed"
                    + (" and applies cleanly." if result.status == STATUS_APPLY_OK else "."),
                    style="bold green",
                    padding=(0, 1),
                )
            )
        else:
            console.print(
                Panel(
                    "[bold white] [WARNING] [/bold white] The model output needs attention.",
                    style="bold yellow",
                    padding=(0, 1),
                )
            )

    def _print_notes(self, notes: List[ErrorInfo]) -> None:
        shown = notes if self.verbose else [n for n in notes if n.severity == "warning"]
        if not shown:
            return
        console.print("\n[bold blue][REPAIRS][/bold blue]")
        console.print("[dim]" + "-" * 50 + "[/dim]")
        limit = len(shown) if self.verbose else self.MAX_NOTES
        for note in shown[:limit]:
            color = "yellow" if note.severity == "warning" else "cyan"
            line = note.context.get("line")
            where = f"line {line}: " if line is not None else ""
            console.print(f"   [{color}]{note.code}[/{color}] [dim]{where}[/dim]{escape(note.message)}")
        if len(shown) > limit:
            console.print(
                f"   [dim]|- ... and {len(shown) - limit} more (use [bold cyan]-v[/bold cyan] to show all)[/dim]"
            )

    def _print_apply_error(self, result: PipelineResult) -> None:
        console.print("\n[bold red][APPLY CHECK FAILED][/bold red]")
        console.print(f"[red]{escape(result.apply_error)}[/red]")

        checked = [a for a in result.attempts if a.check is not None]
        if not checked:
            return
        last = checked[-1]
        for failure in last.check.failures:
            if failure.get("reason") == "corrupt_patch":
                console.print(f"\n[dim]Patch excerpt around line {failure['line']}:[/dim]")
                console.print(escape(patch_excerpt(last.patch, failure["line"])))

    def generate_lint_report(self, issues: List[ErrorInfo], source: str) -> None:
        console.print()
        if not issues:
            print_success(f"[OK] No problems found in {escape(source)}")
            return

        table = Table(title=f"[bold cyan]Lint: {escape(source)}[/bold cyan]")
        table.add_column("Line", justify="right", style="dim")
        table.add_column("Code", style="yellow")
        table.add_column("Message")
        for issue in issues:
            table.add_row(str(issue.context.get("line", "")), issue.code, escape(issue.message))
        console.print(table)
        print_warning(f"{len(issues)} problem(s) found")

    def generate_json_report(self, result: PipelineResult, output_file: str) -> None:
        """Generate a JSON report for CI/CD integration."""
        data = asdict(result)
        if result.diff is not None:
            data["stats"] = result.diff.stats()
        with open(output_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        console.print(
            f"\n[bold green][SAVED][/bold green] [bold white]JSON report saved to:[/bold white] [bright_cyan]{escape(output_file)}[/bright_cyan]"
        )


# ===== Command Line =====

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the diffmend command."""

    parser = argparse.ArgumentParser(
        description="diffmend - Recover apply-ready unified diffs from language model output",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  diffmend response.txt                         # Print the normalized diff to stdout
  diffmend response.txt -o fix.diff             # Save the normalized diff
  cat response.txt | diffmend -R ~/src/project  # Normalize and run git apply --check
  diffmend -R . -s strict response.txt          # Only the exact apply-check strategy
  diffmend --lint change.diff                   # Report problems without rewriting
        """,
    )

    parser.add_argument(
        "input",
        nargs="?",
        default="-",
        help="File holding raw model output (default: stdin)",
    )
    parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Write the normalized diff to FILE instead of stdout",
    )
    parser.add_argument(
        "-R",
        "--repo",
        metavar="DIR",
        help="Repository to run 'git apply --check' against",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show every repair note in the report",
    )
    parser.add_argument(
        "-j",
        "--json-report",
        metavar="FILE",
        help="Save JSON report for CI/CD integration",
    )
    parser.add_argument(
        "-c",
        "--no-color",
        action="store_true",
        help="Disable colored output (useful for logging or CI environments)",
    )
    parser.add_argument(
        "-s",
        "--strategy",
        action="append",
        choices=list(APPLY_STRATEGIES),
        metavar="NAME",
        help=f"Apply-check strategy, repeatable ({', '.join(APPLY_STRATEGIES)}; default: all, in that order)",
    )
    parser.add_argument(
        "-T",
        "--timeout",
        type=int,
        default=DEFAULT_SUBPROCESS_TIMEOUT,
        metavar="SECONDS",
        help=f"Timeout for git operations in seconds (default: {DEFAULT_SUBPROCESS_TIMEOUT})",
    )
    parser.add_argument(
        "-M",
        "--max-file-size",
        type=int,
        default=MAX_FILE_SIZE_MB,
        metavar="MB",
        help=f"Maximum input size to process in megabytes (default: {MAX_FILE_SIZE_MB})",
    )
    parser.add_argument(
        "--keep-section-headings",
        action="store_true",
        help="Keep the text after the closing @@ of each hunk header",
    )
    parser.add_argument(
        "--lint",
        action="store_true",
        help="Report problems in the extracted diff without rewriting it",
    )
    parser.add_argument("--version", action="version", version="diffmend v1.0")

    args = parser.parse_args(argv)

    # Configure console based on arguments
    global console
    console = Console(stderr=True, no_color=args.no_color)

    try:
        config = Config.from_args(args)
    except ValueError as e:
        print_error(escape(str(e)))
        return 1

    try:
        raw_text = read_text_input(config.input_file, config.max_file_size)
    except InputReadError as e:
        print_error(escape(str(e)))
        if e.error_info is not None:
            console.print(f"[dim]{escape(e.error_info.suggestion)}[/dim]")
        return 1

    source_name = "stdin" if config.input_file == "-" else config.input_file
    report_generator = ReportGenerator(verbose=config.verbose)

    if config.lint_only:
        extraction = DiffExtractor().extract(raw_text)
        issues = lint_diff(extraction.text if extraction.found else raw_text)
        report_generator.generate_lint_report(issues, source_name)
        return 0 if not issues else 1

    pipeline = PatchPipeline.from_config(config)
    result = pipeline.run(raw_text)

    if result.patch:
        if config.output_file:
            Path(config.output_file).write_text(result.patch, encoding="utf-8")
            console.print(
                f"[bold green][SAVED][/bold green] [bold white]Normalized diff saved to:[/bold white] [bright_cyan]{escape(config.output_file)}[/bright_cyan]"
            )
        else:
            sys.stdout.write(result.patch)
            sys.stdout.flush()

    report_generator.generate_console_report(result)

    if config.json_report_file:
        report_generator.generate_json_report(result, config.json_report_file)

    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
