from __future__ import annotations

import tempfile
import unittest
from decimal import Decimal
from pathlib import Path

from settlements.persistence import (
    cancel_settlement,
    get_settlement,
    inform_settlement,
    init_db,
    list_excluded_ids,
    list_settled_service_ids,
    list_settlements,
    save_settlement,
    settled_service_ids,
)

HEADER = {
    "insurer_id": 1,
    "insurer_name": "Obra Social Provincial",
    "insurer_acronym": "OSP",
    "type": "SIMPLE",
    "period_start": "2024-01-01",
    "period_end": "2024-01-31",
    "provided_services_count": 2,
    "total": Decimal("180.00"),
    "settlement_key": "settlement:abc",
}


def _save(db: Path, header: dict | None = None) -> int:
    return save_settlement(
        db,
        header or HEADER,
        [
            {
                "agreement_key": "settlement:abc:agreement:100",
                "plan_id": 10,
                "plan_name": "OSP Basico",
                "agreement_id": 100,
                "provided_services_count": 2,
                "subtotal": Decimal("180.00"),
            }
        ],
        [
            {"id": 1, "agreement_key": "settlement:abc:agreement:100", "amount": Decimal("100.00")},
            {"id": 3, "agreement_key": "settlement:abc:agreement:100", "amount": Decimal("80.00")},
        ],
        [2],
    )


class PersistenceTests(unittest.TestCase):
    def test_save_and_read_back_settlement(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "settlements.db"
            init_db(db)
            settlement_id = _save(db)

            row = get_settlement(db, settlement_id)
            self.assertIsNotNone(row)
            self.assertEqual(row["status"], "PENDING")
            self.assertEqual(row["total"], "180.00")
            self.assertEqual(len(row["agreements"]), 1)
            self.assertEqual(row["agreements"][0]["subtotal"], "180.00")
            self.assertEqual(list_settled_service_ids(db, settlement_id), [1, 3])
            self.assertEqual(list_excluded_ids(db, settlement_id), [2])
            self.assertIsNone(get_settlement(db, settlement_id + 1))

    def test_list_filters_by_insurer_and_period(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "settlements.db"
            init_db(db)
            first = _save(db)
            second = _save(db, {**HEADER, "insurer_id": 2, "period_start": "2024-03-01", "period_end": "2024-03-31"})

            self.assertEqual([r["id"] for r in list_settlements(db, insurer_id=1)], [first])
            self.assertEqual([r["id"] for r in list_settlements(db, date_from="2024-02-01")], [second])
            self.assertEqual([r["id"] for r in list_settlements(db, date_to="2024-01-15")], [first])
            self.assertEqual({r["id"] for r in list_settlements(db)}, {first, second})

    def test_status_transitions(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "settlements.db"
            init_db(db)
            settlement_id = _save(db)
            self.assertEqual(settled_service_ids(db), {1, 3})

            informed = inform_settlement(db, settlement_id, "180.00", "2024-02-05", "sent")
            self.assertEqual(informed["status"], "INFORMED")
            self.assertEqual(informed["informed_amount"], "180.00")
            self.assertIsNone(inform_settlement(db, settlement_id, "180.00", "2024-02-06"))

            cancelled = cancel_settlement(db, settlement_id, "duplicate")
            self.assertEqual(cancelled["status"], "CANCEL")
            self.assertEqual(cancelled["observations"], "duplicate")
            self.assertIsNone(cancel_settlement(db, settlement_id))
            self.assertEqual(settled_service_ids(db), set())


if __name__ == "__main__":
    unittest.main()
