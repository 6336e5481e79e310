"""Material stock ledger depleted by completed deliveries."""
from __future__ import annotations

import sqlite3
from typing import List, Optional

from app.core.errors import DependencyFailure, NotFoundError, ValidationError
from app.core.logging import logger
from app.models.dispatch import InventoryItem
from app.services.dispatch_state import DispatchStateStore


class InventoryLedger:
    def __init__(self, store: DispatchStateStore) -> None:
        self._store = store

    def get_stock(self, material_id: str) -> InventoryItem:
        row = self._store.get_inventory(material_id)
        if not row:
            raise NotFoundError(f"Material not stocked: {material_id}")
        return InventoryItem.model_validate(row)

    def list_stock(self) -> List[InventoryItem]:
        return [InventoryItem.model_validate(row) for row in self._store.list_inventory()]

    def set_stock(self, material_id: str, quantity_tons: float, material_name: Optional[str] = None) -> InventoryItem:
        if not (material_id or "").strip():
            raise ValidationError("material_id is required")
        existing = self._store.get_inventory(material_id) or {}
        item = InventoryItem(
            material_id=material_id,
            material_name=material_name or existing.get("material_name"),
            quantity_tons=float(quantity_tons),
        )
        row = self._store.save_inventory(item.model_dump(mode="json"))
        return InventoryItem.model_validate(row)

    def decrement(self, material_id: str, quantity: float) -> Optional[InventoryItem]:
        """Remove shipped tons. Stock may go negative; the ledger records what left the yard."""
        if quantity < 0:
            raise ValidationError("Cannot decrement a negative quantity")
        try:
            row = self._store.adjust_inventory(material_id, -float(quantity))
        except sqlite3.Error as exc:
            raise DependencyFailure(f"Inventory ledger unavailable: {exc}") from exc
        if row is None:
            logger.warning("Inventory depletion skipped, material not stocked", material_id=material_id, quantity=quantity)
            return None
        logger.info("Inventory depleted", material_id=material_id, quantity=quantity, remaining=row["quantity_tons"])
        return InventoryItem.model_validate(row)
