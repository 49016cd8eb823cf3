import hashlib


# Fingerprints are the only cache keys: nothing else about a request
# (user, time, source) takes part in cache identity.


def normalize_prompt(text: str) -> str:
    return (text or "").strip().lower()


def digest(text: str) -> str:
    """SHA-256 of the UTF-8 text, hex encoded."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def prompt_fingerprint(text: str) -> str:
    """
    Fingerprint a user prompt.

    Example:
        prompt_fingerprint("  Top Repos ") == prompt_fingerprint("top repos")
    """
    return digest(normalize_prompt(text))


def sql_fingerprint(sql: str) -> str:
    # Compiled SQL is deterministic, so it is hashed verbatim
    return digest(sql)
