import os
import sys
import threading
import unittest
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.tiers import MemoryBlobStore, MemoryExpiringCache, MemoryTableService, TableNotFoundError
from form_cache import FormSchemaCache
from submission_router import SubmissionRouter, build_row, new_header_keys, with_timestamp


TS = "2026-10-19T09:30:00Z"


class TestRowHelpers(unittest.TestCase):
    def test_timestamp_prepended_when_missing(self) -> None:
        out = with_timestamp({"Name": "Ann"}, TS)
        self.assertEqual(list(out.keys()), ["Timestamp", "Name"])
        self.assertEqual(out["Timestamp"], TS)

    def test_blank_timestamp_replaced(self) -> None:
        out = with_timestamp({"Name": "Ann", "Timestamp": ""}, TS)
        self.assertEqual(list(out.keys()), ["Timestamp", "Name"])
        self.assertEqual(out["Timestamp"], TS)

    def test_client_timestamp_kept(self) -> None:
        out = with_timestamp({"Timestamp": "yesterday", "Name": "Ann"}, TS)
        self.assertEqual(out["Timestamp"], "yesterday")

    def test_new_header_keys_in_payload_order(self) -> None:
        self.assertEqual(new_header_keys(["Timestamp", "Name"], {"Email": 1, "Name": 2, "Age": 3}), ["Email", "Age"])

    def test_build_row_formats_cells(self) -> None:
        headers = ["Timestamp", "Name", "Tags", "Extra", "Missing", "Count"]
        payload = {"Timestamp": TS, "Name": None, "Tags": ["a", "b"], "Extra": {"k": 1}, "Count": 3}
        self.assertEqual(build_row(headers, payload), [TS, "", "a, b", '{"k": 1}', "", 3])


class RouterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tables = MemoryTableService()
        self.tables.ensure_workbook("registry")
        self.tables.ensure_workbook("T")
        self.forms = FormSchemaCache(MemoryExpiringCache(), self.tables, MemoryBlobStore())
        self.router = SubmissionRouter(self.forms, self.tables, clock=lambda: TS)

    def sheet(self, ref: str, name: str):
        return self.tables.open(ref).get_sheet(name)


class TestSubmitForm(RouterTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.forms.save_form("f1", {"fields": []}, {"targetTableRef": "T", "targetTableName": "Responses"}, {})

    def test_first_submission_creates_sheet_and_header(self) -> None:
        result = self.router.submit_form("f1", {"Name": "Ann"})
        self.assertTrue(result["ok"], result)
        self.assertEqual(result["sheet"], "Responses")
        self.assertEqual(result["added_columns"], ["Timestamp", "Name"])
        sheet = self.sheet("T", "Responses")
        self.assertEqual(sheet.read_all(), [["Timestamp", "Name"], [TS, "Ann"]])

    def test_new_keys_extend_header_and_blank_fill(self) -> None:
        self.router.submit_form("f1", {"Name": "Ann", "Email": "ann@example.com"})
        result = self.router.submit_form("f1", {"Email": "bob@example.com", "Phone": "555"})
        self.assertEqual(result["added_columns"], ["Phone"])
        self.assertEqual(result["row_length"], 4)
        rows = self.sheet("T", "Responses").read_all()
        self.assertEqual(rows[0], ["Timestamp", "Name", "Email", "Phone"])
        self.assertEqual(rows[1], [TS, "Ann", "ann@example.com", ""])
        self.assertEqual(rows[2], [TS, "", "bob@example.com", "555"])

    def test_header_only_grows(self) -> None:
        self.router.submit_form("f1", {"A": 1, "B": 2})
        before = self.sheet("T", "Responses").read_header()
        self.router.submit_form("f1", {"C": 3})
        after = self.sheet("T", "Responses").read_header()
        self.assertEqual(after[: len(before)], before)
        self.assertEqual(after, ["Timestamp", "A", "B", "C"])

    def test_existing_header_columns_not_repeated(self) -> None:
        sheet = self.tables.open("T").insert_sheet("Responses")
        sheet.write_cells(0, 0, ["Timestamp", "Name", "Notes"])
        result = self.router.submit_form("f1", {"Notes": "hi", "Name": "Ann"})
        self.assertEqual(result["added_columns"], [])
        self.assertEqual(sheet.read_all()[1], [TS, "Ann", "hi"])

    def test_empty_payload_still_appends_timestamp(self) -> None:
        result = self.router.submit_form("f1", None)
        self.assertTrue(result["ok"])
        self.assertEqual(self.sheet("T", "Responses").read_all(), [["Timestamp"], [TS]])

    def test_overrides_win_over_form_config(self) -> None:
        self.tables.ensure_workbook("T2")
        result = self.router.submit_form("f1", {"Name": "Ann"}, target_ref="T2", target_name="Other")
        self.assertTrue(result["ok"])
        self.assertEqual(result["ref"], "T2")
        self.assertIsNotNone(self.sheet("T2", "Other"))
        self.assertIsNone(self.sheet("T", "Responses"))

    def test_unopenable_destination_is_routing_error(self) -> None:
        result = self.router.submit_form("f1", {"Name": "Ann"}, target_ref="missing", target_name="Responses")
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "ROUTING_ERROR")
        self.assertTrue(result["errors"][0]["detail"]["missing"])
        with self.assertRaises(TableNotFoundError):
            self.tables.open("missing")


class TestConcurrentSubmissions(RouterTestCase):
    def test_parallel_submissions_share_one_header(self) -> None:
        self.forms.save_form("f1", {"fields": []}, {"targetTableRef": "T", "targetTableName": "Responses"}, {})
        results = []

        def submit(i: int) -> None:
            results.append(self.router.submit_form("f1", {"Name": f"user{i}", f"Q{i % 3}": "yes"}))

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(9)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertTrue(all(r["ok"] for r in results))
        rows = self.sheet("T", "Responses").read_all()
        header = rows[0]
        self.assertEqual(len(header), len(set(header)))
        self.assertEqual(sorted(header), ["Name", "Q0", "Q1", "Q2", "Timestamp"])
        self.assertEqual(len(rows), 10)


class TestResolveDestination(RouterTestCase):
    def test_default_table_name(self) -> None:
        self.forms.save_form("f2", {"fields": []}, {"targetTableRef": "T"}, {})
        result = self.router.submit_form("f2", {"Name": "Ann"})
        self.assertEqual(result["sheet"], "Form Responses")

    def test_legacy_config_keys(self) -> None:
        self.forms.save_form("f3", {"fields": []}, {"targetSheetUrl": "T", "targetSheetName": "Legacy"}, {})
        dest = self.router.resolve_destination("f3")
        self.assertEqual((dest["ref"], dest["name"]), ("T", "Legacy"))

    def test_unknown_form_without_override(self) -> None:
        result = self.router.submit_form("ghost", {"Name": "Ann"})
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"][0]["code"], "ROUTING_ERROR")

    def test_unknown_form_with_ref_override_uses_default_name(self) -> None:
        result = self.router.submit_form("ghost", {"Name": "Ann"}, target_ref="T")
        self.assertTrue(result["ok"])
        self.assertEqual(result["sheet"], "Form Responses")

    def test_form_without_target_is_routing_error(self) -> None:
        self.forms.save_form("f4", {"fields": []}, {}, {})
        result = self.router.submit_form("f4", {"Name": "Ann"})
        self.assertEqual(result["errors"][0]["code"], "ROUTING_ERROR")

    def test_lookup_storage_error_passes_through(self) -> None:
        forms = mock.Mock()
        forms.get_form.return_value = {
            "ok": False,
            "errors": [{"code": "STORAGE_ERROR", "message": "registry down", "path": "formId", "detail": None}],
            "warnings": [],
        }
        router = SubmissionRouter(forms, self.tables, clock=lambda: TS)
        result = router.submit_form("f1", {"Name": "Ann"})
        self.assertEqual(result["errors"][0]["code"], "STORAGE_ERROR")

    def test_full_override_skips_lookup(self) -> None:
        forms = mock.Mock()
        router = SubmissionRouter(forms, self.tables, clock=lambda: TS)
        result = router.submit_form("f1", {"Name": "Ann"}, target_ref="T", target_name="Direct")
        self.assertTrue(result["ok"])
        forms.get_form.assert_not_called()


if __name__ == "__main__":
    unittest.main()
