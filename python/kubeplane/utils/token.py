"""
kubeplane/utils/token.py

Random material for cluster bootstrap: kubeadm bootstrap tokens, the
certificate key used by `kubeadm init --upload-certs`, and short ids.
"""

from __future__ import annotations

import re
import secrets
import string

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
TOKEN_RE = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")


def random_string(length: int, alphabet: str = TOKEN_ALPHABET) -> str:
    """Uniform random string over `alphabet` using rejection sampling.

    Args:
        length: Number of characters.
        alphabet: Symbols to draw from (at most 256).

    Returns:
        str: `length` characters from `alphabet`.
    """
    size = len(alphabet)
    # Bytes at or above the largest multiple of `size` are rejected.
    accept_below = 256 - (256 % size)
    out: list[str] = []
    while len(out) < length:
        for b in secrets.token_bytes(length - len(out) + 8):
            if b < accept_below:
                out.append(alphabet[b % size])
                if len(out) == length:
                    break
    return "".join(out)


def generate_bootstrap_token() -> str:
    """kubeadm bootstrap token: `[a-z0-9]{6}.[a-z0-9]{16}`."""
    return f"{random_string(6)}.{random_string(16)}"


def is_bootstrap_token(value: str) -> bool:
    return bool(TOKEN_RE.match(value))


def generate_certificate_key() -> str:
    """32 random bytes, hex encoded, as kubeadm expects for --certificate-key."""
    return secrets.token_hex(32)


def generate_id(length: int = 12) -> str:
    return random_string(length)
