"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

Also provides the OAuth state parameter, which binds a random CSRF token to
an optional return URL so the application can resume where the user started
once the authorization round-trip completes.
"""

import base64
import binascii
import hashlib
import json
import secrets
import string
from dataclasses import dataclass


# Verifier bounds from RFC 7636 section 4.1
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64

# RFC 3986 unreserved characters
VERIFIER_CHARS = string.ascii_letters + string.digits + "-._~"

# Only S256 is ever produced; "plain" is deprecated and never used
CODE_CHALLENGE_METHOD = "S256"

# Random bytes in the CSRF component of the state
STATE_ENTROPY_BYTES = 16


@dataclass
class PKCEPair:
    """Secret verifier kept by the client and the challenge derived from it.

    The challenge travels in the authorization request; the verifier is
    revealed only in the code exchange.
    """

    verifier: str
    challenge: str
    method: str = CODE_CHALLENGE_METHOD


@dataclass(frozen=True)
class ParsedState:
    """Decoded OAuth state parameter.

    Attributes:
        csrf: The random CSRF component
        return_url: Caller-supplied URL to return to after authorization
        legacy: True if the state was a bare random string (not encoded)
    """

    csrf: str
    return_url: str | None = None
    legacy: bool = False


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Random verifier of unreserved characters.

    Raises:
        ValueError: If length is not within 43..128
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"Verifier length {length} is invalid: it must be between "
            f"{MIN_VERIFIER_LENGTH} and {MAX_VERIFIER_LENGTH}"
        )
    return "".join(secrets.choice(VERIFIER_CHARS) for _ in range(length))


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge: unpadded base64url of SHA-256(verifier)."""
    return _b64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PKCEPair:
    """Fresh verifier and its S256 challenge, one pair per authorization attempt."""
    verifier = generate_code_verifier(length)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state(return_url: str | None = None) -> str:
    """Generate an opaque state parameter.

    The state is the base64url encoding of a small JSON document holding a
    random CSRF token and, optionally, the URL to return to afterwards. It is
    unpredictable because of the CSRF component and reversible only with
    parse_state.

    Args:
        return_url: Optional URL to bind into the state

    Returns:
        URL-safe state string
    """
    payload: dict[str, str] = {"csrf": secrets.token_urlsafe(STATE_ENTROPY_BYTES)}
    if return_url is not None:
        payload["returnUrl"] = return_url

    encoded = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return _b64url_encode(encoded)


def generate_state_with_return_url(return_url: str | None = None) -> str:
    """Generate a state parameter carrying a return URL."""
    return generate_state(return_url)


def parse_state(state: str) -> ParsedState:
    """Decode a state parameter produced by generate_state.

    A state that does not decode to the expected JSON document is accepted
    as a legacy bare token with no return URL. Parsing never validates the
    state: that only happens by exact lookup of the pending flow.

    Args:
        state: The state value from the callback

    Returns:
        ParsedState with the CSRF component and return URL
    """
    try:
        data = json.loads(_b64url_decode(state).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return ParsedState(csrf=state, legacy=True)

    if not isinstance(data, dict) or not isinstance(data.get("csrf"), str):
        return ParsedState(csrf=state, legacy=True)

    return_url = data.get("returnUrl")
    if return_url is not None and not isinstance(return_url, str):
        return_url = None

    return ParsedState(csrf=data["csrf"], return_url=return_url)
