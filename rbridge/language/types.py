"""Record types exchanged with the R language server."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


def _markup_text(value: Any) -> Optional[str]:
    """Flatten a string or MarkupContent ({kind, value}) into plain text."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        text = value.get("value")
        return text if isinstance(text, str) else None
    return None


@dataclass
class Position:
    """A position in a text document (0-indexed line and character)."""
    line: int
    character: int

    def to_dict(self) -> Dict[str, int]:
        return {"line": self.line, "character": self.character}

    @classmethod
    def from_dict(cls, d: Dict[str, int]) -> "Position":
        return cls(line=d["line"], character=d["character"])


def chunk_position(cursor_line: int, chunk_start_line: int, character: int) -> Position:
    """Convert a document cursor into a position relative to a chunk body.

    The chunk body starts on the line after the opening fence.
    """
    return Position(line=cursor_line - (chunk_start_line + 1), character=character)


@dataclass
class CompletionCandidate:
    """A completion item resolved into editor-agnostic fields.

    insert_text falls back in this order: ``textEdit.newText``, then
    ``insertText``, then the label.
    """
    label: str
    insert_text: str
    detail: str = ""
    documentation: Optional[str] = None
    kind: Optional[int] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CompletionCandidate":
        label = d.get("label") or ""
        text_edit = d.get("textEdit")
        new_text = text_edit.get("newText") if isinstance(text_edit, dict) else None
        insert_text = new_text or d.get("insertText") or label
        return cls(
            label=label,
            insert_text=insert_text,
            detail=d.get("detail") or "",
            documentation=_markup_text(d.get("documentation")),
            kind=d.get("kind"),
        )


@dataclass
class SignatureInfo:
    """One signature from a signatureHelp response."""
    label: str
    documentation: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SignatureInfo":
        return cls(
            label=d.get("label") or "",
            documentation=_markup_text(d.get("documentation")) or "",
        )


def completion_items(result: Any) -> List[Dict[str, Any]]:
    """Pull the item list out of a completion result (list or CompletionList)."""
    if result is None:
        return []
    items = result.get("items", []) if isinstance(result, dict) else result
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]
