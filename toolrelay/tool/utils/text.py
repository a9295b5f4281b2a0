import re

ANSI_ESCAPE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07]*\x07|[@-Z\\-_])")

MAX_OUTPUT_CHARS = 100_000


def strip_ansi(raw_text: str) -> str:
    """
    Remove terminal control sequences that interactive shells emit.

    - CSI sequences (colors, cursor movement)
    - OSC sequences (window titles), terminated by BEL
    - Carriage returns used for in-place progress bars
    """
    if not isinstance(raw_text, str):
        return raw_text

    text = ANSI_ESCAPE.sub("", raw_text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    # Trim excessive whitespace lines
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text


def truncate_middle(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    head = limit // 2
    tail = limit - head
    omitted = len(text) - limit
    return f"{text[:head]}\n... [truncated {omitted} chars] ...\n{text[len(text) - tail :]}"
