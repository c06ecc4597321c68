from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple


@dataclass(frozen=True)
class VendorInfo:
    name: str | None
    netsuite_vendor_id: int | None = None
    vendor_code: str | None = None


@dataclass(frozen=True)
class ItemSnapshot:
    """Current OPMS state of one item, as read from the catalog."""

    item_id: int
    product_id: int
    item_code: str | None
    product_name: str | None
    product_type: str | None = None
    archived: bool = False
    vendor_product_name: str | None = None
    vendor_color: str | None = None
    width: float | None = None
    vertical_repeat: float | None = None
    horizontal_repeat: float | None = None
    colors: Tuple[str, ...] = ()
    finishes: Tuple[str, ...] = ()
    cleanings: Tuple[str, ...] = ()
    origins: Tuple[str, ...] = ()
    uses: Tuple[str, ...] = ()
    certifications: Tuple[str, ...] = ()
    vendor: VendorInfo | None = None
    prop_65: str | None = None
    ab_2998_compliant: str | None = None
    tariff_code: str | None = None
    front_content: str | None = None
    back_content: str | None = None
    abrasion: str | None = None
    firecodes: str | None = None
    sales_description: str | None = None
    purchase_description: str | None = None
    modified_at: str | None = None
    # Catalog sources that could not be read; their fields count as query_failed.
    failed_sources: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_repeat(self) -> bool:
        return bool(self.vertical_repeat or self.horizontal_repeat)
