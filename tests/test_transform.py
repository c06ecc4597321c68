from __future__ import annotations

import unittest

from netsuite_sync.contexts.sync.domain.snapshot import ItemSnapshot, VendorInfo
from netsuite_sync.contexts.sync.domain.transform import (
    SENTINEL,
    build_netsuite_payload,
    compose_display_name,
    field_validation_summary,
    payload_bytes,
    render_number,
    skip_reason,
)
from netsuite_sync.contexts.sync.domain.validation import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_PASSED,
    simulate_restlet_validation,
    validate_payload,
)
from netsuite_sync.errors import SyncValidationError


def _snapshot(**overrides) -> ItemSnapshot:
    values = dict(
        item_id=42,
        product_id=7,
        item_code="1234-5678",
        product_name="Tahoe",
        product_type="R",
        vendor_product_name="Tahoe Mill",
        width=54.0,
        vertical_repeat=12.5,
        horizontal_repeat=None,
        colors=("Navy", "Blue", "amber", "Blue"),
        finishes=("Stain Repellent",),
        vendor=VendorInfo(name="Acme Mills", netsuite_vendor_id=501, vendor_code="AC-1"),
        prop_65="Y",
        ab_2998_compliant="N",
        tariff_code="5407.61",
        modified_at="2026-01-05T09:00:00Z",
    )
    values.update(overrides)
    return ItemSnapshot(**values)


class TransformTest(unittest.TestCase):
    def test_payload_maps_catalog_fields(self) -> None:
        payload = build_netsuite_payload(_snapshot())

        self.assertEqual(payload["itemId"], "1234-5678")
        self.assertEqual(payload["custitem_opms_item_id"], 42)
        self.assertEqual(payload["custitem_opms_prod_id"], 7)
        self.assertEqual(payload["custitem_opms_item_colors"], "amber, Blue, Navy")
        self.assertEqual(payload["displayname"], "Tahoe: amber, Blue, Navy")
        self.assertEqual(payload["fabricWidth"], 54)
        self.assertEqual(payload["custitem_vertical_repeat"], 12.5)
        self.assertTrue(payload["custitem_opms_is_repeat"])
        self.assertEqual(payload["vendor"], 501)
        self.assertEqual(payload["vendorName"], "Acme Mills")
        self.assertEqual(payload["custitem_prop65_compliance"], "Yes")
        self.assertEqual(payload["custitem_ab2998_compliance"], "No")
        self.assertEqual(payload["custitem_opms_finish"], "Stain Repellent")
        self.assertTrue(payload["usebins"])
        self.assertEqual(payload["unitstype"], 2)

    def test_missing_values_render_as_sentinel(self) -> None:
        payload = build_netsuite_payload(
            _snapshot(width=None, vertical_repeat=None, vendor=None, colors=(), prop_65=None, tariff_code="  ")
        )

        self.assertEqual(payload["fabricWidth"], SENTINEL)
        self.assertEqual(payload["custitem_horizontal_repeat"], SENTINEL)
        self.assertFalse(payload["custitem_opms_is_repeat"])
        self.assertEqual(payload["vendor"], SENTINEL)
        self.assertEqual(payload["vendorcode"], SENTINEL)
        self.assertEqual(payload["custitem_opms_item_colors"], SENTINEL)
        self.assertEqual(payload["displayname"], f"Tahoe: {SENTINEL}")
        self.assertEqual(payload["custitem_prop65_compliance"], SENTINEL)
        self.assertEqual(payload["custitem_tariff_harmonized_code"], SENTINEL)
        self.assertEqual(payload["custitem_opms_front_content"], SENTINEL)

    def test_vendor_without_netsuite_id_is_unmapped(self) -> None:
        payload = build_netsuite_payload(_snapshot(vendor=VendorInfo(name="Loom House", netsuite_vendor_id=None)))
        self.assertEqual(payload["vendor"], SENTINEL)
        self.assertEqual(payload["vendorName"], "Loom House")

    def test_same_snapshot_gives_same_bytes(self) -> None:
        first = payload_bytes(build_netsuite_payload(_snapshot()))
        second = payload_bytes(build_netsuite_payload(_snapshot(colors=("amber", "Blue", "Navy"))))
        self.assertEqual(first, second)

    def test_missing_identity_raises(self) -> None:
        with self.assertRaises(SyncValidationError):
            build_netsuite_payload(_snapshot(item_code=None))
        with self.assertRaises(SyncValidationError):
            build_netsuite_payload(_snapshot(product_name="  "))

    def test_field_summary_counts_failed_sources(self) -> None:
        summary = field_validation_summary(_snapshot(failed_sources=("content",)))
        self.assertEqual(summary["query_failed"], 4)
        payload = build_netsuite_payload(_snapshot(failed_sources=("content",)))
        self.assertIn("query_failed=4", payload["custitem_opms_field_validation_summary"])

    def test_render_number_handles_text_and_junk(self) -> None:
        self.assertEqual(render_number("54"), 54)
        self.assertEqual(render_number("13.25"), 13.25)
        self.assertEqual(render_number("wide"), SENTINEL)
        self.assertEqual(render_number(""), SENTINEL)

    def test_display_name_keeps_sentinel_variant_intact(self) -> None:
        self.assertEqual(compose_display_name("Tahoe ", SENTINEL), "Tahoe:  - ")
        self.assertEqual(compose_display_name("Tahoe", "   "), "Tahoe:  - ")
        self.assertEqual(compose_display_name("Tahoe", " Blue "), "Tahoe: Blue")


class SkipRulesTest(unittest.TestCase):
    def test_digital_items_are_skipped(self) -> None:
        self.assertEqual(skip_reason(_snapshot(product_type="D")), "digital_item")
        self.assertEqual(skip_reason(_snapshot(item_code="digital-swatch")), "digital_item")

    def test_archived_items_are_skipped(self) -> None:
        self.assertEqual(skip_reason(_snapshot(archived=True)), "archived_item")

    def test_code_format_only_binds_automatic_sync(self) -> None:
        self.assertEqual(skip_reason(_snapshot(item_code="1234-56")), "invalid_item_code")
        self.assertIsNone(skip_reason(_snapshot(item_code="1234-56"), manual=True))
        self.assertIsNone(skip_reason(_snapshot()))


class PayloadValidationTest(unittest.TestCase):
    def test_complete_payload_passes(self) -> None:
        result = validate_payload(build_netsuite_payload(_snapshot()))
        self.assertEqual(result.status, STATUS_PASSED)
        self.assertEqual(result.errors, [])

    def test_missing_required_fields_fail(self) -> None:
        result = validate_payload({"itemId": " - ", "custitem_opms_item_id": "abc"})
        self.assertEqual(result.status, STATUS_FAILED)
        self.assertIn("missing required field: itemId", result.errors)
        self.assertIn("custitem_opms_item_id must be numeric", result.errors)

    def test_display_name_format_is_a_warning(self) -> None:
        payload = build_netsuite_payload(_snapshot())
        payload["displayname"] = "Tahoe Blue"
        result = validate_payload(payload)
        self.assertEqual(result.status, STATUS_PARTIAL)
        self.assertEqual(len(result.warnings), 1)

    def test_simulated_restlet_checks_lengths_and_types(self) -> None:
        payload = build_netsuite_payload(_snapshot(item_code="X" * 41))
        payload["usebins"] = "T"
        result = simulate_restlet_validation(payload)

        self.assertFalse(result["would_succeed"])
        self.assertIn("itemId exceeds 40 characters", result["errors"])
        self.assertIn("usebins must be boolean", result["errors"])
        self.assertEqual(result["response"]["error"]["code"], "INVALID_FLD_VALUE")

    def test_simulated_restlet_accepts_valid_payload(self) -> None:
        result = simulate_restlet_validation(build_netsuite_payload(_snapshot()))
        self.assertTrue(result["would_succeed"])
        self.assertEqual(result["response"]["id"], "DRY-RUN-1234-5678")


if __name__ == "__main__":
    unittest.main()
