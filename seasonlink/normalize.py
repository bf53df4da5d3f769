import re

_APOSTROPHES = re.compile(r"['‘’`]")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_SUFFIXES = ("jr", "sr", "ii", "iii", "iv", "v")

DEFENSE_ALIASES = {"D/ST", "DST", "DEF"}


def normalize_name(name: str | None) -> str:
    """Lowercase, drop apostrophes and punctuation, collapse whitespace."""
    if not name:
        return ""
    cleaned = _APOSTROPHES.sub("", name.lower())
    cleaned = _NON_ALNUM.sub("", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def letters_only(name: str | None) -> str:
    return re.sub(r"[^a-z]", "", normalize_name(name))


def strip_suffixes(name: str | None) -> str:
    """Remove generational suffixes (Jr, Sr, II, III, IV, V) from a player name."""
    if not name:
        return ""
    clean = name.lower()
    for suffix in _SUFFIXES:
        clean = re.sub(rf"\s+{suffix}\.?$", " ", clean, flags=re.IGNORECASE)
        clean = re.sub(rf"\s+{suffix}\.?\s+", " ", clean, flags=re.IGNORECASE)
    return clean.strip()


def normalize_team(team: str | None) -> str:
    if not team:
        return ""
    return team.strip().upper()
