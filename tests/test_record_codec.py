import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from formrelay.canonical_json import (
    CanonicalJsonTypeError,
    RecordDecodeError,
    canonical_dumps,
    decode_record,
    encoded_size,
)
from formrelay.record_keys import blob_name, cache_key, form_key


class TestCanonicalJson(unittest.TestCase):
    def test_key_ordering_is_deterministic(self) -> None:
        a = {"schema": {"fields": []}, "formId": "f1"}
        b = {"formId": "f1", "schema": {"fields": []}}
        self.assertEqual(canonical_dumps(a), canonical_dumps(b))

    def test_field_list_order_preserved(self) -> None:
        obj = {"fields": [{"id": "b"}, {"id": "a"}]}
        self.assertEqual(canonical_dumps(obj), '{"fields":[{"id":"b"},{"id":"a"}]}')

    def test_non_ascii_preserved(self) -> None:
        out = canonical_dumps({"label": "नाव"})
        self.assertIn("नाव", out)
        self.assertNotIn("\\u", out)

    def test_unsupported_type_raises(self) -> None:
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({"bad": {1, 2}})

    def test_reject_nan(self) -> None:
        with self.assertRaises(ValueError):
            canonical_dumps({"bad": float("nan")})

    def test_encoded_size_counts_utf8_bytes(self) -> None:
        self.assertEqual(encoded_size("abc"), 3)
        self.assertEqual(encoded_size("é"), 2)


class TestDecodeRecord(unittest.TestCase):
    def test_decodes_object(self) -> None:
        self.assertEqual(decode_record('{"formId":"f1"}'), {"formId": "f1"})

    def test_rejects_empty(self) -> None:
        with self.assertRaises(RecordDecodeError):
            decode_record("")
        with self.assertRaises(RecordDecodeError):
            decode_record(None)

    def test_rejects_invalid_json(self) -> None:
        with self.assertRaises(RecordDecodeError):
            decode_record("{not json")

    def test_rejects_non_object(self) -> None:
        with self.assertRaises(RecordDecodeError):
            decode_record("[1, 2]")


class TestRecordKeys(unittest.TestCase):
    def test_form_key_normalizes_numbers(self) -> None:
        self.assertEqual(form_key(123), "123")
        self.assertEqual(form_key(123.0), "123")
        self.assertEqual(form_key(" f1 "), "f1")
        self.assertEqual(form_key(None), "")

    def test_blob_name_is_deterministic_and_safe(self) -> None:
        self.assertEqual(blob_name("f1"), "form_f1.json")
        self.assertEqual(blob_name(42), "form_42.json")
        self.assertEqual(blob_name("f1"), blob_name(" f1"))
        name = blob_name("../x y")
        self.assertRegex(name, r"^form____x_y\.[0-9a-f]{16}\.json$")
        self.assertNotIn("/", name)
        self.assertNotIn("..", name)

    def test_blob_name_never_shared_by_distinct_ids(self) -> None:
        ids = ["a_b", "a b", "a/b", "a.b", "a..b", "a_b.", "1.5", "form_a_b"]
        names = [blob_name(i) for i in ids]
        self.assertEqual(len(set(names)), len(ids))
        self.assertEqual(blob_name("a_b"), "form_a_b.json")

    def test_cache_key(self) -> None:
        self.assertEqual(cache_key("form:", 7), "form:7")


if __name__ == "__main__":
    unittest.main()
