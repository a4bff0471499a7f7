"""Tests for the Flask API and the corpus storage adapters."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
import redis

from conftest import load_api_index, page, question_block
from rank_estimator import HistoricalScoreRecord, InMemoryScoreCorpus

index = load_api_index()


@pytest.fixture
def corpus(monkeypatch):
    store = InMemoryScoreCorpus([1, 2, 5, 8])
    monkeypatch.setattr(index, "corpus", store)
    return store


@pytest.fixture
def client(corpus):
    index.app.config["TESTING"] = True
    return index.app.test_client()


class BrokenCorpus:
    name = "broken"

    def count(self):
        raise redis.ConnectionError("down")

    def count_less_than(self, value):
        raise redis.ConnectionError("down")

    def append(self, record):
        raise redis.ConnectionError("down")


class TestParseEndpoint:
    def test_scores_and_ranks(self, client, corpus, two_section_page):
        resp = client.post("/api/parse", json={"html": two_section_page, "totalCandidates": 1000})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["ok"] is True
        assert body["parsedCount"] == 5
        assert len(body["pairsSample"]) == 5
        assert [s["name"] for s in body["sections"]] == ["Current Affairs", "Reasoning"]
        assert body["total"]["totalMarks"] == 2.75
        assert body["percentile"] == 50.0
        assert body["estimatedRank"] == 500
        assert body["sampleSize"] == 4
        assert body["dbSaved"] is True
        assert corpus.count() == 5
        assert corpus.records[-1].total_marks == 2.75
        assert corpus.records[-1].meta["sections"][0]["name"] == "Current Affairs"

    def test_marking_scheme_from_request(self, client, two_section_page):
        resp = client.post(
            "/api/parse",
            json={"html": two_section_page, "marksPerCorrect": 2, "negativePerWrong": 0.5, "save": False},
        )
        body = resp.get_json()
        assert body["total"]["totalMarks"] == 5.5
        assert body["sections"][0]["totalMarks"] == 1.5
        assert body["dbSaved"] is False

    def test_form_post_without_save(self, client, corpus, two_section_page):
        resp = client.post("/api/parse", data={"html": two_section_page, "save": "false"})
        assert resp.status_code == 200
        assert resp.get_json()["dbSaved"] is False
        assert corpus.count() == 4

    def test_position_strategy(self, client, two_section_page):
        resp = client.post("/api/parse", json={"html": two_section_page, "sectionStrategy": "position", "save": False})
        assert [s["totalQuestions"] for s in resp.get_json()["sections"]] == [2, 3]

    def test_missing_input(self, client):
        resp = client.post("/api/parse", json={})
        assert resp.status_code == 400
        assert resp.get_json() == {"ok": False, "error": "Provide 'url' or 'html'"}

    @pytest.mark.parametrize(
        "extra",
        [
            {"marksPerCorrect": "lots"},
            {"totalCandidates": None},
            {"sectionStrategy": "nearest"},
            {"marksPerCorrect": "inf"},
            {"negativePerWrong": "nan"},
            {"marksPerCorrect": -1},
            {"negativePerWrong": "-0.25"},
            {"totalCandidates": 0},
        ],
    )
    def test_bad_options(self, client, two_section_page, extra):
        resp = client.post("/api/parse", json={"html": two_section_page, **extra})
        assert resp.status_code == 400

    def test_no_pairs(self, client, corpus):
        resp = client.post("/api/parse", json={"html": page("<p>Session expired</p>")})
        assert resp.status_code == 422
        assert "No answer pairs detected" in resp.get_json()["error"]
        assert corpus.count() == 4

    def test_url_is_fetched(self, client, monkeypatch):
        fetched = []

        def fake_fetch(url):
            fetched.append(url)
            return page(question_block(1, correct=1, chosen="1"))

        monkeypatch.setattr(index, "fetch_html_from_url", fake_fetch)
        resp = client.post("/api/parse", json={"url": "https://cdn.digialm.com/r.html", "save": False})
        assert resp.status_code == 200
        assert fetched == ["https://cdn.digialm.com/r.html"]
        assert resp.get_json()["total"]["correct"] == 1

    def test_fetch_failure(self, client, monkeypatch):
        def fake_fetch(url):
            raise RuntimeError("Failed to fetch URL: timed out")

        monkeypatch.setattr(index, "fetch_html_from_url", fake_fetch)
        resp = client.post("/api/parse", json={"url": "https://cdn.digialm.com/r.html"})
        assert resp.status_code == 500
        body = resp.get_json()
        assert body["error"] == "Failed to fetch URL. If protected, paste HTML instead."
        assert "timed out" in body["detail"]

    def test_without_storage(self, client, monkeypatch, two_section_page):
        monkeypatch.setattr(index, "corpus", None)
        body = client.post("/api/parse", json={"html": two_section_page}).get_json()
        assert body["percentile"] is None
        assert body["estimatedRank"] is None
        assert body["sampleSize"] == 0
        assert body["dbSaved"] is False

    def test_storage_errors_degrade(self, client, monkeypatch, two_section_page):
        monkeypatch.setattr(index, "corpus", BrokenCorpus())
        resp = client.post("/api/parse", json={"html": two_section_page})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["percentile"] is None
        assert body["dbSaved"] is False


class TestHealth:
    def test_reports_storage(self, client):
        assert client.get("/").get_json() == {"status": "Live", "storage": "memory"}


class TestFetch:
    def test_rejects_non_http_scheme(self):
        with pytest.raises(ValueError):
            index.fetch_html_from_url("file:///etc/passwd")


class TestRedisScoreCorpus:
    def test_commands(self):
        client = MagicMock()
        client.zcard.return_value = 12
        client.zcount.return_value = 4
        store = index.RedisScoreCorpus(client)

        assert store.count() == 12
        assert store.count_less_than(10.5) == 4
        client.zcount.assert_called_once_with("marks_rank:scores", "-inf", "(10.5")

        record = HistoricalScoreRecord(total_marks=7.25, record_id="abc")
        store.append(record)
        pipe = client.pipeline.return_value
        pipe.zadd.assert_called_once_with("marks_rank:scores", {"abc": 7.25})
        pipe.hset.assert_called_once_with("marks_rank:records", "abc", record.to_json())
        pipe.execute.assert_called_once()


class TestKvScoreCorpus:
    def test_rest_paths(self, monkeypatch):
        calls = []

        def fake_download(req, timeout=20):
            calls.append((req.full_url, req.get_header("Authorization")))
            return json.dumps({"result": 3}).encode()

        monkeypatch.setattr(index, "_download_request", fake_download)
        store = index.KvScoreCorpus("https://kv.example.com", "tok")

        assert store.count() == 3
        assert store.count_less_than(9) == 3
        assert calls[0] == ("https://kv.example.com/zcard/marks_rank%3Ascores", "Bearer tok")
        assert calls[1][0] == "https://kv.example.com/zcount/marks_rank%3Ascores/-inf/%289"

    def test_error_payload_raises(self, monkeypatch):
        monkeypatch.setattr(index, "_download_request", lambda req, timeout=20: b'{"error": "WRONGTYPE"}')
        store = index.KvScoreCorpus("https://kv.example.com", "tok")
        with pytest.raises(RuntimeError):
            store.count()
