import re

import pytest

ANSI_ESCAPE_RE = re.compile(r'\x1b\[[0-9;]*[A-Za-z]')


def strip_ansi(text):
    return ANSI_ESCAPE_RE.sub('', text)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the user's terminal settings out of rendered output."""
    monkeypatch.delenv("NO_COLOR", raising=False)
    monkeypatch.delenv("PIECES_OS_URL", raising=False)
    monkeypatch.delenv("PIECES_TIMEOUT", raising=False)
