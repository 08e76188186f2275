"""Unit tests for the content scanners."""
import sys
import json
from datetime import datetime, timezone
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from models.content import ContentUnit, SourceType
from services.content_scanner import (
    ContentScanner,
    InMemoryContentScanner,
    JsonExportScanner,
    make_source_id,
    product_text,
    settings_text,
)

EXPORT = {
    "products": [
        {
            "id": 42,
            "name": "Trail Runner Shoe",
            "short_description": "Lightweight shoe for rough terrain.",
            "price": "89.00",
            "currency": "EUR",
            "sku": "TRS-42",
            "stock_status": "instock",
            "categories": ["Footwear", "Running"],
            "attributes": {"Size": ["40", "41", "42"]},
            "permalink": "https://shop.example/product/trail-runner",
            "date_modified": "2026-03-01T10:00:00Z",
        },
        {"id": 7, "name": "Wool Socks", "description": "Warm merino socks.", "language": "de"},
    ],
    "pages": [{"id": 3, "title": "About us", "content": "We are a family business.", "url": "https://shop.example/about"}],
    "policies": [{"id": "returns", "title": "Returns", "content": "Returns are free within 30 days."}],
    "faqs": [{"id": 1, "question": "Do you ship abroad?", "answer": "Yes, across the EU."}],
    "settings": {"store_address": "1 Main St, Berlin", "payment_methods": ["Card", "PayPal"]},
}


def make_unit(source_id, source_type=SourceType.PAGE):
    return ContentUnit(source_id=source_id, source_type=source_type, title=source_id, raw_text=f"Text of {source_id}.")


@pytest.fixture
def export_file(tmp_path):
    path = tmp_path / "store_export.json"
    path.write_text(json.dumps(EXPORT), encoding="utf-8")
    return path


class TestInMemoryContentScanner:
    """Test suite for InMemoryContentScanner."""

    def test_scan_pages_in_id_order(self):
        """Test pages come back sorted by source id and filtered by type."""
        scanner = InMemoryContentScanner([
            make_unit("page:3"), make_unit("page:1"), make_unit("product:9", SourceType.PRODUCT), make_unit("page:2"),
        ])

        first = scanner.scan(SourceType.PAGE, limit=2)
        second = scanner.scan(SourceType.PAGE, limit=2, offset=2)

        assert [u.source_id for u in first] == ["page:1", "page:2"]
        assert [u.source_id for u in second] == ["page:3"]
        assert scanner.scan(SourceType.FAQ, limit=10) == []

    def test_put_get_remove(self):
        """Test the host can push and remove units."""
        scanner = InMemoryContentScanner()
        scanner.put(make_unit("page:1"))

        assert scanner.get("page:1").title == "page:1"
        scanner.remove("page:1")
        assert scanner.get("page:1") is None
        scanner.remove("page:1")

    def test_satisfies_protocol(self):
        """Test the scanner matches the ContentScanner interface."""
        assert isinstance(InMemoryContentScanner(), ContentScanner)


class TestJsonExportScanner:
    """Test suite for JsonExportScanner."""

    def test_products(self, export_file):
        """Test products are flattened into text with metadata."""
        scanner = JsonExportScanner(str(export_file))
        products = scanner.scan(SourceType.PRODUCT, limit=10)

        assert [u.source_id for u in products] == ["product:42", "product:7"]
        shoe = products[0]
        assert shoe.title == "Trail Runner Shoe"
        assert shoe.url == "https://shop.example/product/trail-runner"
        assert shoe.language == "en"
        assert shoe.last_modified_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert "Price: 89.00 EUR." in shoe.raw_text
        assert "Availability: In stock." in shoe.raw_text
        assert "Size: 40, 41, 42." in shoe.raw_text
        assert products[1].language == "de"

    def test_pages_policies_faqs(self, export_file):
        """Test the remaining sections map to their source types."""
        scanner = JsonExportScanner(str(export_file))

        page = scanner.scan(SourceType.PAGE, limit=10)[0]
        policy = scanner.scan(SourceType.POLICY, limit=10)[0]
        faq = scanner.scan(SourceType.FAQ, limit=10)[0]

        assert page.source_id == "page:3"
        assert page.raw_text == "We are a family business."
        assert policy.source_id == "policy:returns"
        assert faq.title == "Do you ship abroad?"
        assert faq.raw_text == "Do you ship abroad?\nYes, across the EU."

    def test_settings_become_one_unit(self, export_file):
        """Test a settings mapping becomes a single store settings unit."""
        settings = JsonExportScanner(str(export_file)).scan(SourceType.SETTING, limit=10)

        assert [u.source_id for u in settings] == ["setting:store"]
        assert "Store address: 1 Main St, Berlin." in settings[0].raw_text
        assert "Payment methods: Card, PayPal." in settings[0].raw_text

    def test_pagination(self, export_file):
        """Test offset and limit page through a type."""
        scanner = JsonExportScanner(str(export_file))
        assert len(scanner.scan(SourceType.PRODUCT, limit=1)) == 1
        assert [u.source_id for u in scanner.scan(SourceType.PRODUCT, limit=1, offset=1)] == ["product:7"]
        assert scanner.scan(SourceType.PRODUCT, limit=1, offset=2) == []

    def test_get_reloads_export(self, export_file):
        """Test get sees changes written to the export after the first scan."""
        scanner = JsonExportScanner(str(export_file))
        scanner.scan(SourceType.PAGE, limit=10)

        changed = dict(EXPORT, pages=[{"id": 3, "title": "About us", "content": "Now employee owned."}])
        export_file.write_text(json.dumps(changed), encoding="utf-8")

        assert scanner.get("page:3").raw_text == "Now employee owned."
        assert scanner.get("page:99") is None

    def test_force_rescan_reloads(self, export_file):
        """Test a forced scan rereads the export."""
        scanner = JsonExportScanner(str(export_file))
        assert len(scanner.scan(SourceType.FAQ, limit=10)) == 1

        export_file.write_text(json.dumps(dict(EXPORT, faqs=[])), encoding="utf-8")
        assert len(scanner.scan(SourceType.FAQ, limit=10)) == 1
        assert scanner.scan(SourceType.FAQ, limit=10, force_rescan=True) == []

    def test_missing_export_raises(self, tmp_path):
        """Test a missing export surfaces as an error for the caller to record."""
        with pytest.raises(FileNotFoundError):
            JsonExportScanner(str(tmp_path / "missing.json")).scan(SourceType.PAGE, limit=10)

    def test_unparseable_date_ignored(self, tmp_path):
        """Test bad dates are dropped instead of failing the scan."""
        path = tmp_path / "export.json"
        path.write_text(json.dumps({"pages": [{"id": 1, "title": "T", "content": "C", "date_modified": "yesterday"}]}))

        page = JsonExportScanner(str(path)).scan(SourceType.PAGE, limit=10)[0]
        assert page.last_modified_at is None


class TestHelpers:
    """Test suite for scanner helper functions."""

    def test_make_source_id(self):
        """Test source ids are type-prefixed."""
        assert make_source_id(SourceType.PRODUCT, 42) == "product:42"
        assert make_source_id("faq", "shipping") == "faq:shipping"

    def test_product_text_minimal(self):
        """Test a product with only a name yields just the name."""
        assert product_text({"name": "Mug"}) == "Mug"

    def test_product_text_unknown_stock_status(self):
        """Test unknown stock statuses are passed through."""
        assert "Availability: preorder." in product_text({"name": "Mug", "stock_status": "preorder"})

    def test_settings_text_nested(self):
        """Test nested settings are flattened."""
        text = settings_text({"shipping_zones": {"EU": "5 EUR", "US": "15 EUR"}})
        assert text == "Shipping zones: EU: 5 EUR; US: 15 EUR."
