"""Pull plausible email addresses out of pasted text or uploaded files."""

import re
from pathlib import Path
from typing import Union

# local-part@domain.tld, TLD at least two letters
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


def extract_emails(text: str) -> list[str]:
    """Return the distinct email-looking substrings of ``text``.

    Returns an empty list when nothing matches. Deciding whether zero
    addresses is an error is left to the caller.
    """
    if not text:
        return []
    return list(dict.fromkeys(_EMAIL_RE.findall(text)))


def read_email_source(path: Union[str, Path]) -> list[str]:
    """Extract emails from a file of any layout (txt, csv, pasted dump)."""
    content = Path(path).read_bytes().decode("utf-8", errors="replace")
    return extract_emails(content)
