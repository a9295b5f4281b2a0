import re
import time
from dataclasses import dataclass, field
from typing import List

# Roughly what a small model can take in one tool result
MAX_CHUNK_SIZE = 50_000

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ContentChunk:
    index: int
    total: int
    content: str
    url: str = ""
    timestamp: float = field(default_factory=time.time)


def extract_main_content(html: str) -> str:
    content = _SCRIPT_RE.sub("", html)
    content = _STYLE_RE.sub("", content)
    content = _TAG_RE.sub("\n", content)
    content = content.replace("&nbsp;", " ")
    return _WHITESPACE_RE.sub(" ", content).strip()


def split_content(
    content: str, url: str = "", cleaning: bool = False, size: int = MAX_CHUNK_SIZE
) -> List[ContentChunk]:
    """Cut ``content`` into numbered chunks of at most ``size`` characters.

    Indexes start at 1. Empty content yields no chunks.
    """
    if cleaning:
        content = extract_main_content(content)

    total = -(-len(content) // size)
    timestamp = time.time()
    return [
        ContentChunk(
            index=i + 1,
            total=total,
            content=content[i * size : (i + 1) * size],
            url=url,
            timestamp=timestamp,
        )
        for i in range(total)
    ]
