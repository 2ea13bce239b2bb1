from __future__ import annotations

import codecs
import json
import sys
import time
from typing import Any, Iterable, Sequence, TextIO


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def fmt_unix_utc(ts: int | None) -> str:
    if not ts:
        return ""
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(int(ts)))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    table = [list(headers)] + [list(r) for r in rows]
    ncols = len(headers)
    widths = [max(len(r[i]) for r in table if i < len(r)) for i in range(ncols)]

    def fmt_row(cols: Sequence[str]) -> str:
        cells = [c.ljust(widths[i]) if i < ncols else c for i, c in enumerate(cols)]
        return "  ".join(cells).rstrip()

    lines = [fmt_row(table[0]), fmt_row(["-" * w for w in widths])]
    lines.extend(fmt_row(r) for r in table[1:])
    return "\n".join(lines)


def status(tag: str, message: str) -> None:
    """Progress line on stderr, e.g. `[run] restored run matches`."""
    print(f"[{tag}] {message}", file=sys.stderr, flush=True)


class TokenPrinter:
    """Streams generated tokens as text, one generation run per paragraph.

    Used as the harness `on_token` callback. A token from a different engine
    than the previous one starts a new paragraph, so the original and the
    restored run print as two blocks.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._engine_id: int | None = None

    def write(self, text: str) -> None:
        self._stream.write(text)
        self._stream.flush()

    def __call__(self, engine: Any, token_id: int) -> None:
        if self._engine_id is not None and id(engine) != self._engine_id:
            self.end_run()
        self._engine_id = id(engine)
        self.write(self._decoder.decode(engine.token_to_bytes(token_id)))

    def end_run(self) -> None:
        self.write(self._decoder.decode(b"", final=True) + "\n\n")
        self._decoder.reset()
