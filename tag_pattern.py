"""Tag patterns: a tiny language describing an image tag naming scheme.

A pattern is literal text plus number slots:

    <>   one or more decimal digits, a compatible slot
    <!>  one or more decimal digits, a breaking slot

Literal text is matched character for character.  It is never handed to a
regular expression engine, so ``.`` and ``-`` mean exactly themselves.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple, Union

logger = logging.getLogger(__name__)

COMPATIBLE_TOKEN = "<>"
BREAKING_TOKEN = "<!>"

# Characters allowed in an image tag besides ASCII letters and digits
TAG_PUNCTUATION = "_.-"
DIGITS = "0123456789"


class PatternSyntaxError(ValueError):
    """A pattern string could not be compiled."""

    def __init__(self, pattern: str, message: str, position: Optional[int] = None):
        self.pattern = pattern
        self.position = position
        self.message = message
        if position is None:
            text = f"Invalid pattern '{pattern}': {message}"
        else:
            text = f"Invalid pattern '{pattern}' at position {position}: {message}"
        super().__init__(text)


@dataclass(frozen=True)
class Literal:
    text: str

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class NumberSlot:
    breaking: bool = False

    def __str__(self) -> str:
        return BREAKING_TOKEN if self.breaking else COMPATIBLE_TOKEN


Segment = Union[Literal, NumberSlot]


def _is_tag_char(char: str) -> bool:
    return char.isascii() and (char.isalnum() or char in TAG_PUNCTUATION)


class Pattern:
    """A compiled, immutable tag pattern."""

    __slots__ = ("_source", "_segments", "_breaking")

    def __init__(self, source: str, segments: Iterable[Segment]):
        self._source = source
        self._segments: Tuple[Segment, ...] = tuple(segments)
        self._breaking: Tuple[bool, ...] = tuple(
            seg.breaking for seg in self._segments if isinstance(seg, NumberSlot)
        )

    @property
    def source(self) -> str:
        return self._source

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return self._segments

    @property
    def slot_count(self) -> int:
        return len(self._breaking)

    @property
    def breaking_slots(self) -> Tuple[bool, ...]:
        """Breaking flag of every slot, in slot order."""
        return self._breaking

    def is_breaking(self, index: int) -> bool:
        return self._breaking[index]

    def match(self, tag: str) -> Optional[Tuple[int, ...]]:
        return match_tag(self, tag)

    def matches(self, tag: str) -> bool:
        return match_tag(self, tag) is not None

    def render(self, values: Iterable[int]) -> str:
        """Rebuild a tag from slot values (no leading zeros)."""
        values = list(values)
        if len(values) != self.slot_count:
            raise ValueError(
                f"Pattern '{self._source}' has {self.slot_count} slots, got {len(values)} values"
            )
        parts = []
        slot_values = iter(values)
        for seg in self._segments:
            if isinstance(seg, Literal):
                parts.append(seg.text)
            else:
                parts.append(str(next(slot_values)))
        return "".join(parts)

    def __str__(self) -> str:
        return "".join(str(seg) for seg in self._segments)

    def __repr__(self) -> str:
        return f"Pattern({self._source!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Pattern):
            return NotImplemented
        return self._segments == other._segments

    def __hash__(self) -> int:
        return hash(self._segments)


def compile_pattern(source: str) -> Pattern:
    """Compile a pattern string.

    Args:
        source: Pattern text, e.g. ``'<!>.<>.<>-alpine'``

    Returns:
        The compiled Pattern

    Raises:
        PatternSyntaxError: empty pattern, unterminated or unknown ``<...>``
            placeholder, a character that can never appear in a tag, two
            adjacent number slots, or no number slot at all.
    """
    if not source:
        raise PatternSyntaxError(source, "pattern is empty")

    segments: List[Segment] = []
    literal: List[str] = []
    pos = 0

    while pos < len(source):
        char = source[pos]
        if char == "<":
            if source.startswith(BREAKING_TOKEN, pos):
                slot, width = NumberSlot(breaking=True), len(BREAKING_TOKEN)
            elif source.startswith(COMPATIBLE_TOKEN, pos):
                slot, width = NumberSlot(breaking=False), len(COMPATIBLE_TOKEN)
            elif source.find(">", pos) == -1:
                raise PatternSyntaxError(source, "unterminated '<'", pos)
            else:
                end = source.find(">", pos)
                raise PatternSyntaxError(
                    source,
                    f"unknown placeholder '{source[pos:end + 1]}', expected '<>' or '<!>'",
                    pos,
                )

            if literal:
                segments.append(Literal("".join(literal)))
                literal = []
            elif segments and isinstance(segments[-1], NumberSlot):
                raise PatternSyntaxError(
                    source, "number slots must be separated by literal text", pos
                )
            segments.append(slot)
            pos += width
            continue

        if not _is_tag_char(char):
            hint = ""
            if char in "\\^$()[]{}*+?|":
                hint = " (patterns are not regular expressions)"
            raise PatternSyntaxError(
                source, f"character '{char}' cannot appear in an image tag{hint}", pos
            )
        literal.append(char)
        pos += 1

    if literal:
        segments.append(Literal("".join(literal)))

    pattern = Pattern(source, segments)
    if pattern.slot_count == 0:
        raise PatternSyntaxError(
            source, "pattern has no number slot ('<>' or '<!>') and can never show an update"
        )
    logger.debug(f"Compiled pattern '{source}' into {len(segments)} segments")
    return pattern


def _digit_run_end(tag: str, start: int) -> int:
    end = start
    while end < len(tag) and tag[end] in DIGITS:
        end += 1
    return end


def _match_from(segments: Tuple[Segment, ...], index: int, tag: str, pos: int,
                values: List[int], failed: Set[Tuple[int, int]]) -> bool:
    if index == len(segments):
        return pos == len(tag)

    seg = segments[index]
    if isinstance(seg, Literal):
        if not tag.startswith(seg.text, pos):
            return False
        return _match_from(segments, index + 1, tag, pos + len(seg.text), values, failed)

    run_end = _digit_run_end(tag, pos)
    if run_end == pos:
        return False

    following = segments[index + 1] if index + 1 < len(segments) else None
    if following is None:
        # Last segment: the digits have to run to the end of the tag
        if run_end != len(tag):
            return False
        values.append(int(tag[pos:run_end]))
        return True

    # A slot that failed to match from this position fails there every time
    if (index, pos) in failed:
        return False

    # Longest digit run that still lets the next literal line up
    for end in range(run_end, pos, -1):
        if not tag.startswith(following.text, end):
            continue
        values.append(int(tag[pos:end]))
        if _match_from(segments, index + 1, tag, end, values, failed):
            return True
        values.pop()
    failed.add((index, pos))
    return False


def match_tag(pattern: Pattern, tag: str) -> Optional[Tuple[int, ...]]:
    """Match a whole tag against a pattern.

    Returns:
        One integer per slot, in slot order, or None when the tag does not
        follow the pattern.
    """
    values: List[int] = []
    if _match_from(pattern.segments, 0, tag, 0, values, set()):
        return tuple(values)
    return None


def filter_tags(pattern: Pattern, tags: Iterable[str]) -> List[str]:
    """Return the tags that match the pattern, in input order."""
    return [tag for tag in tags if match_tag(pattern, tag) is not None]
