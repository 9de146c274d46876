"""Decoding and encoding of Notion page property values.

Notion returns each property as a tagged object (``{"type": "number",
"number": 10}``). :func:`decode_property` turns one into a
:class:`PropertyValue` for the kinds the wallet pipeline understands and
rejects every other kind explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Optional, Union

from operata_wallet.errors import PropertyTypeError, UnsupportedPropertyError


class PropertyKind(str, Enum):
    TITLE = "title"
    RICH_TEXT = "rich_text"
    NUMBER = "number"
    SELECT = "select"
    DATE = "date"
    URL = "url"


Scalar = Union[str, Decimal, None]


@dataclass(frozen=True)
class PropertyValue:
    """A decoded property: its kind and its scalar value (``None`` if empty)."""

    kind: PropertyKind
    value: Scalar


def _plain_text(fragments: list[dict]) -> Optional[str]:
    text = "".join(f.get("plain_text") or "" for f in fragments).strip()
    return text or None


def _decode_number(prop: dict) -> Optional[Decimal]:
    raw = prop.get("number")
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise PropertyTypeError(f"Number property holds {raw!r}") from exc


_DECODERS: dict[PropertyKind, Callable[[dict], Scalar]] = {
    PropertyKind.TITLE: lambda p: _plain_text(p.get("title") or []),
    PropertyKind.RICH_TEXT: lambda p: _plain_text(p.get("rich_text") or []),
    PropertyKind.NUMBER: _decode_number,
    PropertyKind.SELECT: lambda p: (p.get("select") or {}).get("name"),
    PropertyKind.DATE: lambda p: (p.get("date") or {}).get("start"),
    PropertyKind.URL: lambda p: p.get("url") or None,
}


def decode_property(prop: dict) -> PropertyValue:
    """Decode one raw Notion property object.

    Raises
    ------
    UnsupportedPropertyError
        If the property's ``type`` is not one of :class:`PropertyKind`.
    """
    raw_kind = prop.get("type")
    try:
        kind = PropertyKind(raw_kind)
    except ValueError:
        raise UnsupportedPropertyError(f"Unsupported property kind: {raw_kind!r}") from None
    return PropertyValue(kind=kind, value=_DECODERS[kind](prop))


class PageProperties:
    """Typed accessor over a page's ``properties`` mapping.

    An absent property reads as ``None``. A property present with a
    different kind than requested raises :class:`PropertyTypeError`.
    """

    def __init__(self, page: dict) -> None:
        self.page_id: str = page.get("id", "")
        self._props: dict[str, dict] = page.get("properties") or {}

    def __contains__(self, name: str) -> bool:
        return name in self._props

    def get(self, name: str, kind: PropertyKind) -> Scalar:
        prop = self._props.get(name)
        if prop is None:
            return None
        decoded = decode_property(prop)
        if decoded.kind is not kind:
            raise PropertyTypeError(
                f"Property '{name}' on page {self.page_id} is {decoded.kind.value}, "
                f"expected {kind.value}"
            )
        return decoded.value

    def title(self, name: str) -> Optional[str]:
        return self.get(name, PropertyKind.TITLE)  # type: ignore[return-value]

    def text(self, name: str) -> Optional[str]:
        return self.get(name, PropertyKind.RICH_TEXT)  # type: ignore[return-value]

    def number(self, name: str) -> Optional[Decimal]:
        return self.get(name, PropertyKind.NUMBER)  # type: ignore[return-value]

    def select(self, name: str) -> Optional[str]:
        return self.get(name, PropertyKind.SELECT)  # type: ignore[return-value]

    def date(self, name: str) -> Optional[str]:
        return self.get(name, PropertyKind.DATE)  # type: ignore[return-value]

    def url(self, name: str) -> Optional[str]:
        return self.get(name, PropertyKind.URL)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Encoders (values for pages.update / pages.create)
# ---------------------------------------------------------------------------

def encode_title(text: str) -> dict[str, Any]:
    return {"title": [{"type": "text", "text": {"content": text}}]}


def encode_rich_text(text: str) -> dict[str, Any]:
    return {"rich_text": [{"type": "text", "text": {"content": text}}]}


def encode_number(value: Decimal | float | int) -> dict[str, Any]:
    return {"number": float(value)}


def encode_select(name: str) -> dict[str, Any]:
    return {"select": {"name": name}}


def encode_date(start: str) -> dict[str, Any]:
    return {"date": {"start": start}}
