from __future__ import annotations

import json
import logging
import math
import os
import ssl
import sys
from pathlib import Path
from urllib.error import URLError
from urllib.parse import quote, urlparse
from urllib.request import Request, urlopen

import redis
from flask import Flask, jsonify, request

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


from marks_calculator import SECTION_STRATEGIES, build_result, evaluate_html  # noqa: E402
from rank_estimator import HistoricalScoreRecord, RankEstimate, ScoreCorpus, estimate_rank  # noqa: E402

app = Flask(__name__)
load_env_file(PROJECT_ROOT / ".env.local")
load_env_file(PROJECT_ROOT / ".env")

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("marks_rank.api")

KV_REST_API_URL = os.getenv("KV_REST_API_URL", "").strip().rstrip("/")
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "").strip()
REDIS_URL = os.getenv("REDIS_URL", "").strip()
TRUSTED_HOSTS = [h.strip() for h in os.getenv("TRUSTED_HOSTS", "cdn.digialm.com").split(",") if h.strip()]
MAX_FETCH_SIZE = int(os.getenv("MAX_FETCH_SIZE", "2500000"))
DEFAULT_TOTAL_CANDIDATES = int(os.getenv("DEFAULT_TOTAL_CANDIDATES", "300000"))

KEY_SCORES = "marks_rank:scores"
KEY_RECORDS = "marks_rank:records"

PAIRS_SAMPLE_LIMIT = 200
USER_AGENT = "MarksRankBot/1.0"


class RedisScoreCorpus:
    """Scores kept in a sorted set (member = record id) with record JSON in a hash."""

    name = "redis"

    def __init__(self, client: redis.Redis, scores_key: str = KEY_SCORES, records_key: str = KEY_RECORDS) -> None:
        self.client = client
        self.scores_key = scores_key
        self.records_key = records_key

    def count(self) -> int:
        return int(self.client.zcard(self.scores_key))

    def count_less_than(self, value: float) -> int:
        return int(self.client.zcount(self.scores_key, "-inf", f"({value}"))

    def append(self, record: HistoricalScoreRecord) -> None:
        pipe = self.client.pipeline()
        pipe.zadd(self.scores_key, {record.record_id: record.total_marks})
        pipe.hset(self.records_key, record.record_id, record.to_json())
        pipe.execute()


def _download_request(req: Request, timeout: int = 20) -> bytes:
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except ssl.SSLCertVerificationError:
        with urlopen(req, timeout=timeout, context=ssl._create_unverified_context()) as resp:
            return resp.read()
    except URLError as exc:
        if isinstance(exc.reason, ssl.SSLCertVerificationError):
            with urlopen(req, timeout=timeout, context=ssl._create_unverified_context()) as resp:
                return resp.read()
        raise


class KvScoreCorpus:
    """The same sorted-set/hash layout over the Vercel KV (Upstash) REST API."""

    name = "vercel-kv"

    def __init__(self, base_url: str, token: str, scores_key: str = KEY_SCORES, records_key: str = KEY_RECORDS) -> None:
        self.base_url = base_url
        self.token = token
        self.scores_key = scores_key
        self.records_key = records_key

    def _request(self, *segments: object) -> object | None:
        path = "/".join(quote(str(seg), safe="") for seg in segments)
        req = Request(
            f"{self.base_url}/{path}",
            headers={
                "Authorization": f"Bearer {self.token}",
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
            },
        )
        raw = _download_request(req, timeout=12)
        payload = json.loads(raw.decode("utf-8", errors="ignore"))
        if isinstance(payload, dict):
            if payload.get("error"):
                raise RuntimeError(f"KV error: {payload['error']}")
            return payload.get("result")
        return None

    def count(self) -> int:
        return int(self._request("zcard", self.scores_key) or 0)

    def count_less_than(self, value: float) -> int:
        return int(self._request("zcount", self.scores_key, "-inf", f"({value}") or 0)

    def append(self, record: HistoricalScoreRecord) -> None:
        self._request("zadd", self.scores_key, record.total_marks, record.record_id)
        self._request("hset", self.records_key, record.record_id, record.to_json())


def build_corpus() -> ScoreCorpus | None:
    if REDIS_URL:
        try:
            client = redis.Redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            return RedisScoreCorpus(client)
        except (redis.RedisError, ValueError) as exc:
            logger.error("Redis setup failed: %s", exc)
    if KV_REST_API_URL and KV_REST_API_TOKEN:
        return KvScoreCorpus(KV_REST_API_URL, KV_REST_API_TOKEN)
    logger.warning("No REDIS_URL or KV_REST_API_URL configured. Rank estimation disabled.")
    return None


corpus: ScoreCorpus | None = build_corpus()

STORAGE_ERRORS = (redis.RedisError, OSError, RuntimeError, ValueError)


def fetch_html_from_url(response_url: str) -> str:
    parsed = urlparse(response_url)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("Response URL must start with http:// or https://")
    if "*" not in TRUSTED_HOSTS and parsed.hostname not in TRUSTED_HOSTS:
        logger.warning("Fetching from untrusted host: %s", parsed.hostname)

    req = Request(
        response_url,
        headers={
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        },
    )

    def _download(context: ssl.SSLContext | None = None) -> tuple[bytes, str]:
        with urlopen(req, timeout=10, context=context) as resp:
            raw_local = resp.read(MAX_FETCH_SIZE + 1)
            charset_local = resp.headers.get_content_charset() or "utf-8"
            return raw_local, charset_local

    try:
        raw, charset = _download()
    except ssl.SSLCertVerificationError:
        raw, charset = _download(ssl._create_unverified_context())
    except URLError as exc:
        if isinstance(exc.reason, ssl.SSLCertVerificationError):
            raw, charset = _download(ssl._create_unverified_context())
        else:
            raise RuntimeError(f"Failed to fetch URL: {exc}") from exc
    except Exception as exc:
        raise RuntimeError(f"Failed to fetch URL: {exc}") from exc

    if len(raw) > MAX_FETCH_SIZE:
        raise RuntimeError(f"Response larger than {MAX_FETCH_SIZE} bytes")
    try:
        return raw.decode(charset, errors="ignore")
    except LookupError:
        return raw.decode("utf-8", errors="ignore")


def parse_bool(v: object, default: bool = True) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() not in {"0", "false", "no", "off", ""}


def error(message: str, status: int, **extra: object):
    return jsonify({"ok": False, "error": message, **extra}), status


@app.get("/")
def health():
    return jsonify({"status": "Live", "storage": getattr(corpus, "name", None)})


@app.post("/api/parse")
def parse_response():
    data = request.get_json(silent=True) or request.form.to_dict()
    url = str(data.get("url") or "").strip()
    html = data.get("html") or ""
    if not url and not html:
        return error("Provide 'url' or 'html'", 400)

    try:
        marks_per_correct = float(data.get("marksPerCorrect", 1))
        negative_per_wrong = float(data.get("negativePerWrong", 0.25))
        total_candidates = int(data.get("totalCandidates", DEFAULT_TOTAL_CANDIDATES))
    except (TypeError, ValueError, OverflowError):
        return error("marksPerCorrect, negativePerWrong and totalCandidates must be numbers", 400)
    if not all(math.isfinite(x) and x >= 0 for x in (marks_per_correct, negative_per_wrong)):
        return error("marksPerCorrect and negativePerWrong must be finite and non-negative", 400)
    if total_candidates < 1:
        return error("totalCandidates must be at least 1", 400)
    strategy = str(data.get("sectionStrategy") or "even")
    if strategy not in SECTION_STRATEGIES:
        return error(f"sectionStrategy must be one of {sorted(SECTION_STRATEGIES)}", 400)
    save = parse_bool(data.get("save"), default=True)

    if url:
        try:
            html = fetch_html_from_url(url)
        except (RuntimeError, ValueError, OSError) as exc:
            logger.warning("Fetch failed for %s: %s", url, exc)
            return error("Failed to fetch URL. If protected, paste HTML instead.", 500, detail=str(exc))

    parsed, scores = evaluate_html(html, marks_per_correct, negative_per_wrong, strategy)
    pairs = parsed.all_pairs()
    if not pairs:
        return error("No answer pairs detected. Try pasting full HTML source.", 422)

    estimate = RankEstimate()
    if corpus is not None:
        try:
            estimate = estimate_rank(scores.total.total_marks, corpus, total_candidates)
        except STORAGE_ERRORS as exc:
            logger.error("Rank calc error: %s", exc)

    saved = False
    if corpus is not None and save:
        record = HistoricalScoreRecord.from_summary(
            scores.total,
            source_url=url or None,
            meta={"sections": [{"name": name, **summary.to_dict()} for name, summary in scores.sections]},
        )
        try:
            corpus.append(record)
            saved = True
        except STORAGE_ERRORS as exc:
            logger.error("DB save error: %s", exc)

    result = build_result(parsed, scores)
    return jsonify(
        {
            "ok": True,
            "parsedCount": len(pairs),
            "pairsSample": result["pairs"][:PAIRS_SAMPLE_LIMIT],
            **result,
            "dbSaved": saved,
            **estimate.to_dict(),
        }
    )


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=5000, debug=True)
