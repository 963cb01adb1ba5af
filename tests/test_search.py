from __future__ import annotations

import asyncio
import unittest
from unittest.mock import patch

import httpx

from pipeline.search import BRAVE_ENDPOINT, BraveSearch, normalize_url, search_batch

from report_fixtures import FakeSearch

BRAVE_PAYLOAD = {
    "web": {
        "results": [
            {
                "title": "NVIDIA Q3 FY25 results",
                "url": "https://nvidianews.nvidia.com/q3",
                "description": "Revenue of $35.1 billion",
                "extra_snippets": ["Data center revenue $30.8B", "Up 112% year over year"],
            },
            {"title": "No url here"},
            {"title": "Reuters", "url": "https://www.reuters.com/nvda", "description": None},
        ]
    }
}


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _search(handler, query="NVIDIA earnings", count=5):
    async def go():
        async with _client(handler) as client:
            return await BraveSearch("test-key", timeout=5, client=client).search(query, count)

    return asyncio.run(go())


class NormalizeUrlTests(unittest.TestCase):
    def test_equivalent_forms_match(self):
        self.assertEqual(normalize_url("https://WWW.Example.com/a/"), "https://example.com/a")
        self.assertEqual(normalize_url("https://example.com/a#top"), "https://example.com/a")
        self.assertEqual(normalize_url("HTTPS://example.com/a?x=1"), "https://example.com/a?x=1")

    def test_unparseable_url_does_not_raise(self):
        self.assertEqual(normalize_url(" HTTP://[Broken "), "http://[broken")
        self.assertNotEqual(normalize_url("http://[broken"), normalize_url("https://broken.com"))

    def test_empty(self):
        self.assertEqual(normalize_url(""), "")
        self.assertEqual(normalize_url(None), "")


class BraveSearchTests(unittest.TestCase):
    def test_request_and_parsing(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = f"{request.url.scheme}://{request.url.host}{request.url.path}"
            seen["params"] = dict(request.url.params)
            seen["token"] = request.headers.get("X-Subscription-Token")
            return httpx.Response(200, json=BRAVE_PAYLOAD)

        response = _search(handler, count=50)

        self.assertEqual(seen["url"], BRAVE_ENDPOINT)
        self.assertEqual(seen["token"], "test-key")
        self.assertEqual(seen["params"]["q"], "NVIDIA earnings")
        self.assertEqual(seen["params"]["count"], "20")
        self.assertEqual(seen["params"]["extra_snippets"], "true")

        self.assertEqual(response.query, "NVIDIA earnings")
        self.assertEqual([r.url for r in response.results], ["https://nvidianews.nvidia.com/q3", "https://www.reuters.com/nvda"])
        first = response.results[0]
        self.assertEqual(first.snippet, "Revenue of $35.1 billion")
        self.assertEqual(first.extra_text, "Data center revenue $30.8B\nUp 112% year over year")
        self.assertIsNone(response.results[1].extra_text)
        self.assertEqual(response.results[1].snippet, "")

    def test_http_error_is_empty_result(self):
        response = _search(lambda request: httpx.Response(429, json={"error": "slow down"}))
        self.assertEqual(response.results, [])

    def test_transport_error_is_empty_result(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        self.assertEqual(_search(handler).results, [])

    def test_invalid_json_is_empty_result(self):
        response = _search(lambda request: httpx.Response(200, content=b"<html>nope</html>"))
        self.assertEqual(response.results, [])

    def test_from_config_without_key(self):
        with patch("config.BRAVE_API_KEY", ""):
            self.assertIsNone(BraveSearch.from_config())
        with patch("config.BRAVE_API_KEY", "k"):
            self.assertIsInstance(BraveSearch.from_config(), BraveSearch)


class SearchBatchTests(unittest.TestCase):
    def test_failures_degrade_to_empty_responses(self):
        service = FakeSearch(
            default=[{"title": "t", "url": "https://a.com", "snippet": "s"}],
            fail_queries={"bad"},
        )
        responses = asyncio.run(search_batch(service, ["good", "bad", "also good"]))
        self.assertEqual([r.query for r in responses], ["good", "bad", "also good"])
        self.assertEqual([len(r.results) for r in responses], [1, 0, 1])


if __name__ == "__main__":
    unittest.main()
