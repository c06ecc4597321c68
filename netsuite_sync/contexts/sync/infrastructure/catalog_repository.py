from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple

from flask import current_app

from netsuite_sync.contexts.sync.domain.pricing import PRICING_COLUMNS
from netsuite_sync.contexts.sync.domain.snapshot import ItemSnapshot, VendorInfo
from netsuite_sync.contexts.sync.infrastructure.support import iso_utc
from netsuite_sync.db import row_to_dict


_ATTRIBUTE_KINDS = ("finish", "cleaning", "origin", "use", "certification")


class CatalogRepository:
    """Read path into the OPMS catalog; pricing is the only thing written back."""

    def __init__(self, db) -> None:
        self.db = db

    def _optional_query(self, source: str, failed: List[str], query: Callable[[], Any], default: Any) -> Any:
        try:
            return query()
        except Exception:  # noqa: BLE001
            current_app.logger.warning(
                "catalog_source_query_failed",
                extra={"source": source},
                exc_info=True,
            )
            failed.append(source)
            return default

    def load_item_snapshot(self, item_id: int | str) -> ItemSnapshot | None:
        try:
            normalized_id = int(str(item_id).strip())
        except ValueError:
            return None
        row = self.db.execute(
            """
            SELECT i.id AS item_id, i.product_id, i.code, i.vendor_color,
                   i.archived AS item_archived, i.updated_at AS item_updated_at,
                   p.name AS product_name, p.product_type, p.vendor_product_name,
                   p.width, p.vertical_repeat, p.horizontal_repeat,
                   p.prop_65, p.ab_2998_compliant, p.tariff_code,
                   p.sales_description, p.purchase_description,
                   p.archived AS product_archived, p.updated_at AS product_updated_at
            FROM catalog_items i
            JOIN catalog_products p ON p.id = i.product_id
            WHERE i.id = ?
            """,
            (normalized_id,),
        ).fetchone()
        if row is None:
            return None
        item = row_to_dict(row)
        product_id = int(item["product_id"])
        failed: List[str] = []

        colors = self._optional_query("colors", failed, lambda: self._colors(normalized_id), ())
        attributes = self._optional_query("attributes", failed, lambda: self._attributes(product_id), {})
        vendor = self._optional_query("vendor", failed, lambda: self._vendor(product_id), None)
        content = self._optional_query("content", failed, lambda: self._content(product_id), {})

        modified_candidates = [value for value in (item.get("item_updated_at"), item.get("product_updated_at")) if value]
        return ItemSnapshot(
            item_id=int(item["item_id"]),
            product_id=product_id,
            item_code=item.get("code"),
            product_name=item.get("product_name"),
            product_type=item.get("product_type"),
            archived=bool(item.get("item_archived")) or bool(item.get("product_archived")),
            vendor_product_name=item.get("vendor_product_name"),
            vendor_color=item.get("vendor_color"),
            width=item.get("width"),
            vertical_repeat=item.get("vertical_repeat"),
            horizontal_repeat=item.get("horizontal_repeat"),
            colors=colors,
            finishes=attributes.get("finish", ()),
            cleanings=attributes.get("cleaning", ()),
            origins=attributes.get("origin", ()),
            uses=attributes.get("use", ()),
            certifications=attributes.get("certification", ()),
            vendor=vendor,
            prop_65=item.get("prop_65"),
            ab_2998_compliant=item.get("ab_2998_compliant"),
            tariff_code=item.get("tariff_code"),
            front_content=content.get("front_content"),
            back_content=content.get("back_content"),
            abrasion=content.get("abrasion"),
            firecodes=content.get("firecodes"),
            sales_description=item.get("sales_description"),
            purchase_description=item.get("purchase_description"),
            modified_at=max(modified_candidates) if modified_candidates else None,
            failed_sources=tuple(failed),
        )

    def _colors(self, item_id: int) -> Tuple[str, ...]:
        rows = self.db.execute(
            "SELECT color_name FROM catalog_item_colors WHERE item_id = ? ORDER BY sort_order ASC, color_name ASC",
            (item_id,),
        ).fetchall()
        return tuple(str(row["color_name"]) for row in rows)

    def _attributes(self, product_id: int) -> Dict[str, Tuple[str, ...]]:
        rows = self.db.execute(
            "SELECT attribute_kind, name FROM catalog_product_attributes WHERE product_id = ?",
            (product_id,),
        ).fetchall()
        grouped: Dict[str, List[str]] = {kind: [] for kind in _ATTRIBUTE_KINDS}
        for row in rows:
            grouped.setdefault(str(row["attribute_kind"]), []).append(str(row["name"]))
        return {kind: tuple(names) for kind, names in grouped.items()}

    def _vendor(self, product_id: int) -> VendorInfo | None:
        row = self.db.execute(
            """
            SELECT v.name, v.netsuite_vendor_id, pv.vendor_code
            FROM catalog_product_vendors pv
            JOIN catalog_vendors v ON v.id = pv.vendor_id
            WHERE pv.product_id = ? AND v.active = 1
            ORDER BY v.id ASC
            LIMIT 1
            """,
            (product_id,),
        ).fetchone()
        if row is None:
            return None
        vendor_id = row["netsuite_vendor_id"]
        return VendorInfo(
            name=row["name"],
            netsuite_vendor_id=int(vendor_id) if vendor_id is not None else None,
            vendor_code=row["vendor_code"],
        )

    def _content(self, product_id: int) -> Dict[str, Any]:
        row = self.db.execute(
            """
            SELECT front_content, back_content, abrasion, firecodes
            FROM catalog_product_content
            WHERE product_id = ?
            """,
            (product_id,),
        ).fetchone()
        return row_to_dict(row)

    def item_ids_for_product(self, product_id: int | str, *, include_archived: bool = False) -> List[int]:
        archived_clause = "" if include_archived else "AND archived = 0"
        rows = self.db.execute(
            f"SELECT id FROM catalog_items WHERE product_id = ? {archived_clause} ORDER BY id ASC",
            (int(product_id),),
        ).fetchall()
        return [int(row["id"]) for row in rows]

    def items_with_codes(self, item_ids: List[int] | None = None, *, after_id: int = 0, limit: int = 1000) -> List[Dict[str, Any]]:
        """Active items carrying a code, either the given ids or the next page after a cursor."""
        coded = "archived = 0 AND code IS NOT NULL AND TRIM(code) <> ''"
        if item_ids:
            rows = self.db.execute(
                f"SELECT id, code FROM catalog_items WHERE id IN ({', '.join('?' for _ in item_ids)}) AND {coded} ORDER BY id ASC",
                tuple(int(item_id) for item_id in item_ids),
            ).fetchall()
        else:
            rows = self.db.execute(
                f"SELECT id, code FROM catalog_items WHERE id > ? AND {coded} ORDER BY id ASC LIMIT ?",
                (int(after_id), max(1, int(limit))),
            ).fetchall()
        return [{"id": int(row["id"]), "code": str(row["code"]).strip()} for row in rows]

    def product_exists(self, product_id: int | str) -> bool:
        row = self.db.execute("SELECT id FROM catalog_products WHERE id = ?", (int(product_id),)).fetchone()
        return row is not None

    def find_item_by_code(self, item_code: str) -> Dict[str, Any] | None:
        row = self.db.execute(
            "SELECT id, product_id, code FROM catalog_items WHERE code = ?",
            (str(item_code or "").strip(),),
        ).fetchone()
        return row_to_dict(row) or None

    def find_items(
        self,
        *,
        code: str | None = None,
        name: str | None = None,
        vendor: str | None = None,
        limit: int = 50,
    ) -> List[int]:
        clauses: List[str] = []
        params: List[Any] = []
        if code:
            clauses.append("LOWER(i.code) LIKE ?")
            params.append(f"%{code.strip().lower()}%")
        if name:
            clauses.append("LOWER(p.name) LIKE ?")
            params.append(f"%{name.strip().lower()}%")
        if vendor:
            clauses.append(
                """
                EXISTS (
                    SELECT 1
                    FROM catalog_product_vendors pv
                    JOIN catalog_vendors v ON v.id = pv.vendor_id
                    WHERE pv.product_id = p.id AND LOWER(v.name) LIKE ?
                )
                """
            )
            params.append(f"%{vendor.strip().lower()}%")
        if not clauses:
            return []
        rows = self.db.execute(
            f"""
            SELECT i.id
            FROM catalog_items i
            JOIN catalog_products p ON p.id = i.product_id
            WHERE {' AND '.join(clauses)}
            ORDER BY i.id ASC
            LIMIT ?
            """,
            (*params, max(1, min(200, int(limit)))),
        ).fetchall()
        return [int(row["id"]) for row in rows]

    def get_pricing(self, product_id: int | str) -> Dict[str, Any]:
        row = self.db.execute(
            f"SELECT {', '.join(PRICING_COLUMNS)} FROM catalog_product_pricing WHERE product_id = ?",
            (int(product_id),),
        ).fetchone()
        pricing = row_to_dict(row)
        return {column: pricing.get(column) for column in PRICING_COLUMNS}

    def apply_pricing(
        self,
        product_id: int | str,
        values: Dict[str, float],
        *,
        now: datetime | None = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Write the given pricing columns; returns (before, after)."""
        columns = [column for column in PRICING_COLUMNS if column in values]
        before = self.get_pricing(product_id)
        if not columns:
            return before, dict(before)
        stamp = iso_utc(now)
        exists = self.db.execute(
            "SELECT product_id FROM catalog_product_pricing WHERE product_id = ?",
            (int(product_id),),
        ).fetchone()
        if exists is None:
            self.db.execute(
                f"""
                INSERT INTO catalog_product_pricing (product_id, {', '.join(columns)}, updated_at)
                VALUES (?, {', '.join('?' for _ in columns)}, ?)
                """,
                (int(product_id), *[values[column] for column in columns], stamp),
            )
        else:
            assignments = ", ".join(f"{column} = ?" for column in columns)
            self.db.execute(
                f"UPDATE catalog_product_pricing SET {assignments}, updated_at = ? WHERE product_id = ?",
                (*[values[column] for column in columns], stamp, int(product_id)),
            )
        return before, self.get_pricing(product_id)
