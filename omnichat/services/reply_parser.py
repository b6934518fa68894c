"""Directive extraction from raw LLM replies.

The model may embed ``[SEND_PHOTO: AssetName]`` and ``[BUTTON: Label | url]``
tags. Parsers only split the raw text into clean text plus directive values;
resolving photo names against stored assets is the caller's job.
"""

import re
from dataclasses import dataclass, field
from typing import Protocol

from omnichat.schemas.inbound import ReplyButton

PHOTO_PATTERN = re.compile(r"\[\s*SEND_PHOTO\s*:\s*([^\]\s]+)\s*\]", re.IGNORECASE)
BUTTON_PATTERN = re.compile(r"\[\s*BUTTON\s*:\s*([^|\]]+)\|\s*([^\]]+)\]", re.IGNORECASE)
ORPHAN_MARKER_PATTERN = re.compile(r"^[*\-•\d.]+\s*$", re.MULTILINE)
EXCESS_NEWLINES_PATTERN = re.compile(r"\n{3,}")


@dataclass
class ParsedReply:
    text: str
    photo_names: list[str] = field(default_factory=list)
    buttons: list[ReplyButton] = field(default_factory=list)


class DirectiveParser(Protocol):
    def parse(self, raw: str) -> ParsedReply: ...


def clean_reply_text(text: str) -> str:
    """Drop list markers left alone on a line and collapse blank runs."""
    text = ORPHAN_MARKER_PATTERN.sub("", text)
    text = EXCESS_NEWLINES_PATTERN.sub("\n\n", text)
    return text.strip()


class RegexDirectiveParser:
    def parse(self, raw: str) -> ParsedReply:
        raw = raw or ""
        photo_names = [m.group(1) for m in PHOTO_PATTERN.finditer(raw)]
        buttons = [
            ReplyButton(label=m.group(1).strip(), url=m.group(2).strip()) for m in BUTTON_PATTERN.finditer(raw)
        ]

        text = PHOTO_PATTERN.sub("", raw)
        text = BUTTON_PATTERN.sub("", text)
        return ParsedReply(text=clean_reply_text(text), photo_names=photo_names, buttons=buttons)
