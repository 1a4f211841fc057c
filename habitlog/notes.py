import logging
import re
from typing import Any

import requests
from pydantic import BaseModel, StrictStr

from habitlog.config import Settings

log = logging.getLogger(__name__)

OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
MAX_WORDS = 14

# Notes are dictated in Norwegian; these add nothing to a one-line summary
FILLER_PHRASES = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bom du skjønner\b",
        r"\bhvis du skjønner\b",
        r"\bpå en måte\b",
        r"\bfor å si det sånn\b",
        r"\bhva skal jeg si\b",
    )
]
FILLER_WORDS = re.compile(r"\b(eh|ehh|ehm|mmm|liksom|lissom|altså|asså|typ|sånn)\b", re.IGNORECASE)
_EDGE_PUNCT = re.compile(r"^[\W_]+|[\W_]+$")
_TRAILING = re.compile(r"[;:,.\-–\s]+$")
_LEADING_BULLET = re.compile(r"^[•*-]\s*")

SHORTEN_INSTRUCTIONS = (
    "Skriv om brukerens tale/notat til ett kort punkt på norsk bokmål. "
    "Fjern fyllord og gjentakelser, behold konkrete fakta (hvem/hva/når/tall). "
    "Returner bare selve teksten."
)


class ShortenNoteIn(BaseModel):
    text: StrictStr


def normalize_single_line(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip()


def shorten_heuristic(text: str) -> str:
    """Drop filler, repeated words and trailing punctuation; cap at MAX_WORDS words."""
    text = normalize_single_line(text)
    if not text:
        return ""
    for pattern in FILLER_PHRASES:
        text = pattern.sub(" ", text)
    text = FILLER_WORDS.sub(" ", text)

    words: list[str] = []
    previous = ""
    for word in text.split():
        key = _EDGE_PUNCT.sub("", word.lower())
        if key and key == previous:
            continue
        words.append(word)
        if key:
            previous = key

    text = " ".join(words[:MAX_WORDS])
    text = _TRAILING.sub("", _LEADING_BULLET.sub("", text)).strip()
    if not text:
        return ""
    return text[0].upper() + text[1:]


def extract_output_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    if isinstance(data.get("output_text"), str) and data["output_text"].strip():
        return data["output_text"].strip()
    pieces: list[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if not isinstance(content, dict):
                continue
            if isinstance(content.get("text"), str):
                pieces.append(content["text"])
            elif isinstance(content.get("output_text"), str):
                pieces.append(content["output_text"])
    return " ".join(pieces).strip()


def shorten_with_openai(text: str, settings: Settings, session: Any = requests, timeout: int = 20) -> str | None:
    """Ask the Responses API for a one-line rewrite. Returns None without an API key."""
    if not settings.openai_api_key:
        return None
    resp = session.post(
        OPENAI_RESPONSES_URL,
        headers={"Authorization": f"Bearer {settings.openai_api_key}", "Content-Type": "application/json"},
        json={
            "model": settings.openai_note_model,
            "instructions": SHORTEN_INSTRUCTIONS,
            "input": text,
            "max_output_tokens": 60,
            "temperature": 0.2,
        },
        timeout=timeout,
    )
    if resp.status_code != 200:
        raise requests.HTTPError(f"OpenAI returned {resp.status_code}", response=resp)
    return extract_output_text(resp.json()) or None


def shorten_note(text: str, settings: Settings, session: Any = requests) -> str:
    """Heuristic summary, refined by OpenAI when a key is configured."""
    input_text = normalize_single_line(text)
    if not input_text:
        return ""
    short_text = shorten_heuristic(input_text)
    if not settings.openai_api_key:
        return short_text
    try:
        ai_text = shorten_with_openai(input_text, settings, session=session)
    except (requests.RequestException, ValueError) as exc:
        log.warning("Note shortening via OpenAI failed, using heuristic: %s", exc)
        return short_text
    if ai_text:
        return shorten_heuristic(ai_text) or short_text
    return short_text
