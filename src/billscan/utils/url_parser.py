import re
from urllib.parse import parse_qs, urlparse


class URLParserError(ValueError):
    """Raised when a Drive URL does not contain a folder ID."""


ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

# Drive folders: /drive/folders/{ID}, /drive/u/0/folders/{ID}, /drive/mobile/folders/{ID}
FOLDER_PATH_RE = re.compile(r"/drive/(?:u/\d+/|mobile/)?folders/([a-zA-Z0-9_-]+)")

DRIVE_HOSTS = ("drive.google.com", "docs.google.com")


def parse_google_id(input_str: str) -> str:
    """
    Return the Drive folder ID from a folder URL, or the input if it is already an ID.

    Legacy ``/open?id=...`` links are accepted too.
    """
    if not input_str or not input_str.strip():
        raise URLParserError("Input string cannot be empty or whitespace")

    value = input_str.strip()
    if not value.startswith("http"):
        if not ID_RE.match(value):
            raise URLParserError(f"Not a Drive folder ID: {value!r}")
        return value

    parsed = urlparse(value)
    if parsed.netloc not in DRIVE_HOSTS:
        raise URLParserError("Unsupported URL domain")

    match = FOLDER_PATH_RE.search(parsed.path)
    if match:
        return match.group(1)

    ids = parse_qs(parsed.query).get("id")
    if parsed.path.rstrip("/") == "/open" and ids and ID_RE.match(ids[0]):
        return ids[0]

    raise URLParserError("Could not find folder ID in URL")
