import os
import sys
import unittest
import uuid

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

USE_DB = os.getenv("USE_DB", "0") == "1"
DB_URL = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")

if USE_DB and DB_URL:
    from app.tiers_db import DbPropertyStore, DbTableService
    from app.tiers import MemoryBlobStore, MemoryExpiringCache, TableNotFoundError, TierError
    from form_cache import FormCacheConfig, FormSchemaCache
    from submission_router import SubmissionRouter


@unittest.skipUnless(USE_DB and DB_URL, "DB tier tests require USE_DB=1 and DATABASE_URL/SUPABASE_DB_URL")
class TestDbTiers(unittest.TestCase):
    def setUp(self) -> None:
        self.suffix = uuid.uuid4().hex[:8]
        self.tables = DbTableService()

    def test_property_round_trip(self) -> None:
        props = DbPropertyStore()
        key = f"TEST_{self.suffix}"
        props.put(key, "one")
        props.put(key, "two")
        self.assertEqual(props.get(key), "two")
        props.delete(key)
        self.assertIsNone(props.get(key))

    def test_open_unknown_workbook(self) -> None:
        with self.assertRaises(TableNotFoundError):
            self.tables.open(f"missing_{self.suffix}")

    def test_sheet_rows(self) -> None:
        workbook = self.tables.ensure_workbook(f"wb_{self.suffix}")
        sheet = workbook.insert_sheet("Responses")
        with self.assertRaises(TierError):
            workbook.insert_sheet("Responses")
        sheet.write_cells(0, 0, ["Timestamp", "Name"])
        self.assertEqual(sheet.append_row(["t1", "Ann"]), 1)
        self.assertEqual(sheet.append_row(["t2", "Bob"]), 2)
        self.assertEqual(sheet.append_row(["t3", "Cy"]), 3)
        sheet.write_cells(0, 2, ["Email"])
        sheet.delete_row(2)
        self.assertEqual(
            sheet.read_all(),
            [["Timestamp", "Name", "Email"], ["t1", "Ann", ""], ["t3", "Cy", ""]],
        )
        self.assertEqual(sheet.read_header(), ["Timestamp", "Name", "Email"])

    def test_save_and_submit_end_to_end(self) -> None:
        registry_ref = f"registry_{self.suffix}"
        dest_ref = f"dest_{self.suffix}"
        self.tables.ensure_workbook(registry_ref)
        self.tables.ensure_workbook(dest_ref)
        forms = FormSchemaCache(MemoryExpiringCache(), self.tables, MemoryBlobStore(), FormCacheConfig(registry_ref=registry_ref))
        saved = forms.save_form("f1", {"fields": []}, {"targetTableRef": dest_ref, "targetTableName": "Responses"}, {})
        self.assertTrue(saved["ok"], saved)
        router = SubmissionRouter(forms, self.tables, clock=lambda: "2026-10-19T00:00:00Z")
        result = router.submit_form("f1", {"Name": "Ann"})
        self.assertTrue(result["ok"], result)
        sheet = self.tables.open(dest_ref).get_sheet("Responses")
        self.assertEqual(sheet.read_all(), [["Timestamp", "Name"], ["2026-10-19T00:00:00Z", "Ann"]])


if __name__ == "__main__":
    unittest.main()
