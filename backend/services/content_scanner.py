"""Content scanner interface and adapters that feed the indexing pipeline."""
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable

from models.content import ContentUnit, SourceType

logger = logging.getLogger(__name__)


@runtime_checkable
class ContentScanner(Protocol):
    """Pull interface over the store's content."""

    def scan(
        self,
        source_type: SourceType,
        limit: int,
        offset: int = 0,
        force_rescan: bool = False,
    ) -> List[ContentUnit]:
        """One page of units of a type; fewer than `limit` means the end."""
        ...

    def get(self, source_id: str) -> Optional[ContentUnit]:
        """A single unit by id, or None if it no longer exists."""
        ...


def make_source_id(source_type: SourceType, external_id: Any) -> str:
    return f"{SourceType(source_type).value}:{external_id}"


class InMemoryContentScanner:
    """Scanner over units held in memory; the host pushes changes with put/remove."""

    def __init__(self, units: Optional[Iterable[ContentUnit]] = None):
        self._lock = threading.Lock()
        self._units: Dict[str, ContentUnit] = {}
        for unit in units or []:
            self._units[unit.source_id] = unit

    def put(self, unit: ContentUnit) -> None:
        with self._lock:
            self._units[unit.source_id] = unit

    def remove(self, source_id: str) -> None:
        with self._lock:
            self._units.pop(source_id, None)

    def scan(self, source_type: SourceType, limit: int, offset: int = 0, force_rescan: bool = False) -> List[ContentUnit]:
        with self._lock:
            matching = [u for u in self._units.values() if u.source_type == source_type]
        matching.sort(key=lambda u: u.source_id)
        return matching[offset:offset + limit]

    def get(self, source_id: str) -> Optional[ContentUnit]:
        with self._lock:
            return self._units.get(source_id)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable date: {value}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def product_text(product: Mapping[str, Any]) -> str:
    """Flatten a product record into indexable text."""
    lines = [product.get("name", "")]
    if product.get("short_description"):
        lines.append(product["short_description"])
    if product.get("description"):
        lines.append(product["description"])

    if product.get("price"):
        currency = product.get("currency", "")
        lines.append(f"Price: {product['price']} {currency}".strip() + ".")
    if product.get("sale_price"):
        lines.append(f"Sale price: {product['sale_price']}.")
    if product.get("sku"):
        lines.append(f"SKU: {product['sku']}.")
    if product.get("stock_status"):
        status = {"instock": "In stock", "outofstock": "Out of stock", "onbackorder": "Available on backorder"}
        lines.append(f"Availability: {status.get(product['stock_status'], product['stock_status'])}.")
    if product.get("categories"):
        lines.append(f"Categories: {', '.join(product['categories'])}.")
    if product.get("tags"):
        lines.append(f"Tags: {', '.join(product['tags'])}.")
    for name, values in (product.get("attributes") or {}).items():
        if isinstance(values, (list, tuple)):
            values = ", ".join(str(v) for v in values)
        lines.append(f"{name}: {values}.")
    return "\n".join(line for line in lines if line)


def settings_text(settings: Mapping[str, Any]) -> str:
    """Flatten store settings (address, shipping, payments, ...) into text."""
    lines = []
    for key, value in settings.items():
        label = key.replace("_", " ").capitalize()
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        elif isinstance(value, Mapping):
            value = "; ".join(f"{k}: {v}" for k, v in value.items())
        lines.append(f"{label}: {value}.")
    return "\n".join(lines)


class JsonExportScanner:
    """
    Scanner over a JSON export of the store.

    Expected document:
        {
          "products": [{"id", "name", "description", "short_description", "price",
                        "currency", "sku", "stock_status", "categories", "tags",
                        "attributes", "permalink", "date_modified", "language"}],
          "pages":    [{"id", "title", "content", "url", "date_modified"}],
          "policies": [{"id", "title", "content", "url", "date_modified"}],
          "faqs":     [{"id", "question", "answer", "url", "date_modified"}],
          "settings": {"store_address": ..., "shipping_zones": [...], ...}
        }
    """

    SECTIONS = {
        SourceType.PRODUCT: "products",
        SourceType.PAGE: "pages",
        SourceType.POLICY: "policies",
        SourceType.FAQ: "faqs",
        SourceType.SETTING: "settings",
    }

    def __init__(self, export_path: str, language: str = "en"):
        self.export_path = Path(export_path)
        self.language = language
        self._units: Optional[Dict[SourceType, List[ContentUnit]]] = None
        self._lock = threading.Lock()

    def _load(self) -> Dict[SourceType, List[ContentUnit]]:
        with open(self.export_path, "r", encoding="utf-8") as f:
            document = json.load(f)

        units: Dict[SourceType, List[ContentUnit]] = {}
        for source_type, section in self.SECTIONS.items():
            raw = document.get(section) or []
            if source_type == SourceType.SETTING and isinstance(raw, Mapping):
                raw = [{"id": "store", "title": "Store settings", "settings": raw}]
            units[source_type] = [self._to_unit(source_type, record) for record in raw]
            units[source_type].sort(key=lambda u: u.source_id)

        logger.info(
            f"Loaded store export {self.export_path}: "
            + ", ".join(f"{t.value}={len(u)}" for t, u in units.items())
        )
        return units

    def _to_unit(self, source_type: SourceType, record: Mapping[str, Any]) -> ContentUnit:
        if source_type == SourceType.PRODUCT:
            title, text = record.get("name", ""), product_text(record)
        elif source_type == SourceType.FAQ:
            title = record.get("question", "")
            text = f"{title}\n{record.get('answer', '')}"
        elif source_type == SourceType.SETTING and "settings" in record:
            title, text = record.get("title", "Store settings"), settings_text(record["settings"])
        else:
            title, text = record.get("title", ""), record.get("content", "")

        return ContentUnit(
            source_id=make_source_id(source_type, record["id"]),
            source_type=source_type,
            title=title,
            raw_text=text,
            url=record.get("permalink") or record.get("url") or "",
            language=record.get("language") or self.language,
            last_modified_at=_parse_date(record.get("date_modified")),
        )

    def _all(self, reload: bool = False) -> Dict[SourceType, List[ContentUnit]]:
        with self._lock:
            if self._units is None or reload:
                self._units = self._load()
            return self._units

    def scan(self, source_type: SourceType, limit: int, offset: int = 0, force_rescan: bool = False) -> List[ContentUnit]:
        units = self._all(reload=force_rescan and offset == 0)
        return units.get(SourceType(source_type), [])[offset:offset + limit]

    def get(self, source_id: str) -> Optional[ContentUnit]:
        units = self._all(reload=True)
        for group in units.values():
            for unit in group:
                if unit.source_id == source_id:
                    return unit
        return None
