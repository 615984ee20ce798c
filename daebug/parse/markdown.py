"""Structural parsing of page logs: blocks, requests, replies and diffs.

A page log is plain markdown. The parser reduces the markdown-it token
stream to the top-level blocks of the document, each tagged with its source
line span and a content digest, and recognises two block pairs on top:

* a request: a level-3 heading ``<emoji><agent> to <page> at HH:MM:SS``
  followed by a fence tagged ``js`` or ``javascript``;
* a reply: a level-4 heading ``<emoji><page> to <agent> at HH:MM:SS (<N>ms)``
  followed by a fence tagged ``JSON``.

A request is answered (``has_footer``) once a reply from its page follows it
before the next request heading.
"""
from __future__ import annotations

import enum
import hashlib
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import List, Optional, Sequence, Set, Tuple

import structlog
from markdown_it import MarkdownIt

from daebug.errors import LogParseError
from daebug.orchestrator.registry import sanitize_name

LOGGER = structlog.get_logger(__name__)

_MD = MarkdownIt("commonmark")

REQUEST_LEVEL = 3
REPLY_LEVEL = 4
REQUEST_LANGS = {"js", "javascript"}
REPLY_LANG = "json"
RESULTS_TITLE = "Test Results"

_EXCHANGE_RE = re.compile(
    r"^(?P<emoji>[^\w\s]+)\s*(?P<sender>\S+)\s+to\s+(?P<recipient>\S+)\s+at\s+"
    r"(?P<time>\d{2}:\d{2}:\d{2})(?:\s+\((?P<duration>\d+(?:\.\d+)?m?s)\))?\s*$"
)
# Headings that were clearly meant as an exchange but do not parse.
_EXCHANGE_LIKE_RE = re.compile(r"^[^\w\s]+.*\s+to\s+\S+\s+at\s+\d")
# Server notes such as "### 🗣️System at 10:00:00".
_DIAGNOSTIC_RE = re.compile(r"^[^\w\s]+\s*System\s+at\s+\d{2}:\d{2}:\d{2}\s*$")


class BlockKind(str, enum.Enum):
    HEADING = "heading"
    FENCE = "fence"
    PARAGRAPH = "paragraph"
    OTHER = "other"


@dataclass(frozen=True)
class Block:
    """A top-level node with its source span (``end`` is exclusive)."""

    kind: BlockKind
    start: int
    end: int
    digest: str
    level: int = 0
    text: str = ""
    info: str = ""
    content: str = ""

    @property
    def lang(self) -> str:
        return self.info.split()[0].lower() if self.info.strip() else ""


@dataclass
class LogDocument:
    lines: List[str]
    blocks: List[Block] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    def headings(self, level: Optional[int] = None) -> List[Tuple[int, Block]]:
        return [
            (index, block)
            for index, block in enumerate(self.blocks)
            if block.kind is BlockKind.HEADING and (level is None or block.level == level)
        ]


@dataclass(frozen=True)
class Exchange:
    """Parsed request or reply heading."""

    emoji: str
    sender: str
    recipient: str
    time: str
    duration: Optional[str] = None


@dataclass(frozen=True)
class Request:
    agent: str
    target: str
    time: str
    code: str
    has_footer: bool
    block_index: int
    fence_start: int
    fence_end: int
    heading_line: Optional[int] = None

    @property
    def target_page(self) -> str:
        return self.target


class ChangeKind(str, enum.Enum):
    CHILDREN_ADDED = "children_added"
    HEADING_CHANGED = "heading_changed"
    CODE_BLOCK_ADDED = "code_block_added"
    CONTENT_CHANGED = "content_changed"


@dataclass(frozen=True)
class Change:
    kind: ChangeKind
    index: int


def normalise(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _digest(kind: BlockKind, lines: Sequence[str]) -> str:
    payload = kind.value + "\n" + "\n".join(line.rstrip() for line in lines)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def _fence_closed(block_lines: Sequence[str], markup: str) -> bool:
    if len(block_lines) < 2:
        return False
    closing = block_lines[-1].strip()
    return len(closing) >= len(markup) and set(closing) == {markup[0]}


def parse_document(text: str) -> LogDocument:
    """Parse a whole log, raising ``LogParseError`` on malformed structure."""
    lines = normalise(text).split("\n")
    tokens = _MD.parse("\n".join(lines))
    blocks: List[Block] = []
    for position, token in enumerate(tokens):
        if token.level != 0 or token.nesting == -1 or token.map is None:
            continue
        start, end = token.map
        span = lines[start:end]
        if token.type == "heading_open":
            inline = tokens[position + 1] if position + 1 < len(tokens) else None
            heading = inline.content.strip() if inline is not None and inline.type == "inline" else ""
            level = int(token.tag[1:])
            if level in (REQUEST_LEVEL, REPLY_LEVEL) and _EXCHANGE_LIKE_RE.match(heading):
                if parse_exchange(heading) is None:
                    raise LogParseError(f"unparsable exchange heading: {heading!r}", line=start)
            blocks.append(
                Block(BlockKind.HEADING, start, end, _digest(BlockKind.HEADING, span), level=level, text=heading)
            )
        elif token.type == "fence":
            if not _fence_closed(span, token.markup):
                raise LogParseError("unbalanced code fence", line=start)
            blocks.append(
                Block(
                    BlockKind.FENCE,
                    start,
                    end,
                    _digest(BlockKind.FENCE, span),
                    info=token.info.strip(),
                    content=token.content,
                )
            )
        elif token.type == "paragraph_open":
            inline = tokens[position + 1]
            blocks.append(
                Block(BlockKind.PARAGRAPH, start, end, _digest(BlockKind.PARAGRAPH, span), text=inline.content)
            )
        else:
            blocks.append(Block(BlockKind.OTHER, start, end, _digest(BlockKind.OTHER, span), text="\n".join(span)))
    return LogDocument(lines=lines, blocks=blocks)


def parse_exchange(heading: str) -> Optional[Exchange]:
    match = _EXCHANGE_RE.match(heading.strip())
    if not match:
        return None
    return Exchange(
        emoji=match.group("emoji"),
        sender=match.group("sender"),
        recipient=match.group("recipient"),
        time=match.group("time"),
        duration=match.group("duration"),
    )


def _request_heading(block: Block) -> Optional[Exchange]:
    if block.kind is not BlockKind.HEADING or block.level != REQUEST_LEVEL:
        return None
    exchange = parse_exchange(block.text)
    if exchange is None or exchange.duration is not None:
        return None
    return exchange


def _reply_heading(block: Block) -> Optional[Exchange]:
    if block.kind is not BlockKind.HEADING or block.level != REPLY_LEVEL:
        return None
    exchange = parse_exchange(block.text)
    if exchange is None or exchange.duration is None:
        return None
    return exchange


def is_exchange_heading(block: Block) -> bool:
    return _request_heading(block) is not None or _reply_heading(block) is not None


def is_diagnostic_heading(block: Block) -> bool:
    return block.kind is BlockKind.HEADING and block.level == REQUEST_LEVEL and bool(_DIAGNOSTIC_RE.match(block.text))


def is_entry_heading(block: Block) -> bool:
    """True for any heading the server appends to a session: exchanges and diagnostics."""
    return is_exchange_heading(block) or is_diagnostic_heading(block)


def _is_request_fence(block: Optional[Block]) -> bool:
    return block is not None and block.kind is BlockKind.FENCE and block.lang in REQUEST_LANGS


def _is_reply_fence(block: Optional[Block]) -> bool:
    return block is not None and block.kind is BlockKind.FENCE and block.lang == REPLY_LANG


def _same_page(left: str, right: str) -> bool:
    return left == right or sanitize_name(left) == sanitize_name(right)


def _answered(blocks: Sequence[Block], after: int, page: str) -> bool:
    for index in range(after, len(blocks)):
        block = blocks[index]
        if _request_heading(block) is not None:
            return False
        reply = _reply_heading(block)
        next_block = blocks[index + 1] if index + 1 < len(blocks) else None
        if reply is not None and _same_page(reply.sender, page) and _is_reply_fence(next_block):
            return True
    return False


def find_requests(document: LogDocument, page: str) -> List[Request]:
    """Return every request addressed to ``page``, in document order."""
    blocks = document.blocks
    requests: List[Request] = []
    attached: Set[int] = set()
    for index, block in enumerate(blocks):
        next_block = blocks[index + 1] if index + 1 < len(blocks) else None
        if _reply_heading(block) is not None and _is_reply_fence(next_block):
            attached.add(index + 1)
            continue
        exchange = _request_heading(block)
        if exchange is None or not _is_request_fence(next_block):
            continue
        attached.add(index + 1)
        if not _same_page(exchange.recipient, page) or not next_block.content.strip():
            continue
        requests.append(
            Request(
                agent=exchange.sender,
                target=exchange.recipient,
                time=exchange.time,
                code=next_block.content,
                has_footer=_answered(blocks, index + 2, exchange.recipient),
                block_index=index + 1,
                fence_start=next_block.start,
                fence_end=next_block.end,
                heading_line=block.start,
            )
        )
    bare = _trailing_bare_request(document, attached, page)
    if bare is not None:
        requests.append(bare)
    return requests


def _trailing_bare_request(document: LogDocument, attached: Set[int], page: str) -> Optional[Request]:
    # An agent may append a fence without the heading; only the last fence counts.
    blocks = document.blocks
    fences = [index for index, block in enumerate(blocks) if block.kind is BlockKind.FENCE]
    if not fences:
        return None
    index = fences[-1]
    block = blocks[index]
    if index in attached or not _is_request_fence(block) or not block.content.strip():
        return None
    if index > 0 and _reply_heading(blocks[index - 1]) is not None:
        return None
    results = results_span(document)
    if results is not None and results[0] <= block.start < results[1]:
        return None
    for later in blocks[index + 1:]:
        if _request_heading(later) is not None or _reply_heading(later) is not None:
            return None
    return Request(
        agent="agent",
        target=page,
        time="",
        code=block.content,
        has_footer=False,
        block_index=index,
        fence_start=block.start,
        fence_end=block.end,
    )


def latest_unanswered(document: LogDocument, page: str) -> Optional[Request]:
    for request in reversed(find_requests(document, page)):
        if not request.has_footer:
            return request
    return None


def same_request(left: Request, right: Request) -> bool:
    return left.code.strip() == right.code.strip() and left.time == right.time


def occurrence(document: LogDocument, request: Request) -> int:
    """Count the earlier requests to the same page with identical code and time."""
    return sum(
        1
        for other in find_requests(document, request.target)
        if other.block_index < request.block_index and same_request(other, request)
    )


def parse_request(text: str, page: str) -> Optional[Request]:
    """Return the most recent unanswered request for ``page``, if any."""
    try:
        document = parse_document(text)
    except LogParseError as exc:
        LOGGER.warning("parse_failed", page=page, error=str(exc), line=exc.line)
        return None
    return latest_unanswered(document, page)


def _emptyish(block: Block) -> bool:
    return block.kind is BlockKind.FENCE and not block.content.strip()


def diff(old: Optional[LogDocument], new: LogDocument) -> Set[Change]:
    """Classify block-level differences between two documents.

    Blocks are identified by their digest. Indices in the returned changes
    refer to ``new``; a deletion is reported at the position it left behind.
    """
    old_blocks = old.blocks if old is not None else []
    new_blocks = new.blocks
    changes: Set[Change] = set()

    def added(index: int) -> None:
        changes.add(Change(ChangeKind.CHILDREN_ADDED, index))
        if new_blocks[index].kind is BlockKind.FENCE:
            changes.add(Change(ChangeKind.CODE_BLOCK_ADDED, index))

    matcher = SequenceMatcher(
        a=[block.digest for block in old_blocks],
        b=[block.digest for block in new_blocks],
        autojunk=False,
    )
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        if tag == "insert":
            for index in range(j1, j2):
                added(index)
            continue
        if tag == "delete":
            changes.add(Change(ChangeKind.CONTENT_CHANGED, j1))
            continue
        for offset in range(max(i2 - i1, j2 - j1)):
            old_block = old_blocks[i1 + offset] if i1 + offset < i2 else None
            index = j1 + offset
            if index >= j2:
                changes.add(Change(ChangeKind.CONTENT_CHANGED, j2))
                continue
            new_block = new_blocks[index]
            if old_block is None:
                added(index)
            elif old_block.kind is BlockKind.HEADING and new_block.kind is BlockKind.HEADING:
                changes.add(Change(ChangeKind.HEADING_CHANGED, index))
            elif new_block.kind is BlockKind.FENCE and (old_block.kind is not BlockKind.FENCE or _emptyish(old_block)):
                # A fence typed over a placeholder counts as new code.
                changes.add(Change(ChangeKind.CODE_BLOCK_ADDED, index))
            else:
                changes.add(Change(ChangeKind.CONTENT_CHANGED, index))
    return changes


def should_dispatch(changes: Set[Change], request: Optional[Request]) -> bool:
    """True when the change set introduced the fence of ``request``."""
    if request is None or request.has_footer:
        return False
    triggers = (ChangeKind.CODE_BLOCK_ADDED, ChangeKind.CHILDREN_ADDED)
    return any(change.kind in triggers and change.index == request.block_index for change in changes)


def find_section(document: LogDocument, title: str, level: int = 2) -> Optional[Tuple[int, int]]:
    """Return the line span of the body under a top-level heading.

    The span starts after the heading line and ends at the next heading of
    the same or a higher level, or at the end of the document.
    """
    headings = document.headings()
    for position, (index, block) in enumerate(headings):
        if block.level != level or block.text != title:
            continue
        end = len(document.lines)
        for _, later in headings[position + 1:]:
            if later.level <= level:
                end = later.start
                break
        return block.end, end
    return None


def results_span(document: LogDocument) -> Optional[Tuple[int, int]]:
    """Span of the ``## Test Results`` body, cut at the first entry heading below it."""
    span = find_section(document, RESULTS_TITLE, level=2)
    if span is None:
        return None
    start, end = span
    for _, block in document.headings():
        if start <= block.start < end and is_entry_heading(block):
            return start, block.start
    return start, end
