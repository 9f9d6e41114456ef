import json
import os
import sys
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.translate import LibreTranslateProvider, PassthroughProvider, TranslationProviderError, translate_text


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestLibreTranslateProvider(unittest.TestCase):
    def test_posts_request_and_reads_result(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"translatedText": "नमस्कार"})

        provider = LibreTranslateProvider("http://translate.local/", api_key="k1", client=_client(handler))
        self.assertEqual(translate_text(provider, "Hello"), "नमस्कार")
        self.assertEqual(seen["url"], "http://translate.local/translate")
        self.assertEqual(seen["body"]["source"], "en")
        self.assertEqual(seen["body"]["target"], "mr")
        self.assertEqual(seen["body"]["api_key"], "k1")

    def test_explicit_languages(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"translatedText": "hola"})

        provider = LibreTranslateProvider("http://translate.local", client=_client(handler))
        self.assertEqual(translate_text(provider, "hello", target_lang="es", source_lang="en"), "hola")
        self.assertEqual(seen["target"], "es")
        self.assertNotIn("api_key", seen)

    def test_http_error_raises(self) -> None:
        provider = LibreTranslateProvider(
            "http://translate.local",
            client=_client(lambda request: httpx.Response(503, text="busy")),
        )
        with self.assertRaises(TranslationProviderError):
            provider.translate("hello", "en", "mr")


class TestTranslateText(unittest.TestCase):
    def test_failure_returns_input(self) -> None:
        provider = LibreTranslateProvider(
            "http://translate.local",
            client=_client(lambda request: httpx.Response(200, json={"unexpected": True})),
        )
        self.assertEqual(translate_text(provider, "Hello"), "Hello")

    def test_empty_text(self) -> None:
        self.assertEqual(translate_text(PassthroughProvider(), ""), "")
        self.assertEqual(translate_text(PassthroughProvider(), None), "")

    def test_passthrough(self) -> None:
        self.assertEqual(translate_text(PassthroughProvider(), "Hello"), "Hello")


if __name__ == "__main__":
    unittest.main()
