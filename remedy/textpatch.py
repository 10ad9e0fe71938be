"""Span-based text edits applied against an original text in one pass."""

from dataclasses import dataclass


@dataclass(frozen=True)
class TextEdit:
    """Replace ``text[start:end]`` with ``replacement`` (``start == end`` inserts)."""

    start: int
    end: int
    replacement: str

    @property
    def is_insertion(self) -> bool:
        return self.start == self.end


def apply_edits(text: str, edits: list[TextEdit]) -> str:
    """Apply ``edits`` to ``text`` in descending offset order.

    Offsets always refer to the original ``text``. Insertions sharing an offset
    keep the order in which they were given and land before a replacement
    starting at the same offset. Overlapping replacements raise ``ValueError``.
    """
    ordered = sorted(
        enumerate(edits),
        key=lambda item: (item[1].start, not item[1].is_insertion, item[0]),
        reverse=True,
    )

    result = text
    floor = len(text)
    for _, edit in ordered:
        if edit.start < 0 or edit.end < edit.start or edit.end > len(text):
            raise ValueError(f"Edit span out of range: {edit.start}..{edit.end}")
        if edit.end > floor:
            raise ValueError(f"Overlapping edit at {edit.start}..{edit.end}")
        result = result[: edit.start] + edit.replacement + result[edit.end :]
        floor = edit.start
    return result


def line_start(text: str, offset: int) -> int:
    """Offset of the first character of the line containing ``offset``."""
    return text.rfind("\n", 0, offset) + 1


def indentation_at(text: str, offset: int) -> str:
    """Leading whitespace of the line containing ``offset``."""
    start = line_start(text, offset)
    end = start
    while end < len(text) and text[end] in " \t":
        end += 1
    return text[start:end]


def line_number(text: str, offset: int) -> int:
    return text.count("\n", 0, offset)


def newline_style(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"
