# cachet/lnurl.py
#
# -----------------------------------------------------------------------------
# Challenge encoding
# -----------------------------------------------------------------------------
# A login challenge reaches the wallet as an LNURL:
#
#     bech32("lnurl", "<callback>?tag=login&k1=<hex(challenge)>")
#
# bech32 gives us a checksummed, case-insensitive, QR-friendly string with an
# explicit human-readable prefix. LNURLs are routinely longer than the 90
# character limit BIP-173 imposes on addresses, so decoding goes through the
# library's checksum primitives instead of bech32_decode().
# -----------------------------------------------------------------------------

from urllib.parse import parse_qs, urlencode, urlparse

from bech32 import CHARSET, bech32_encode, bech32_verify_checksum, convertbits

LNURL_HRP = "lnurl"
LOGIN_TAG = "login"


def login_url(challenge_id: bytes, callback_url: str) -> str:
    callback_url = (callback_url or "").strip()
    if not callback_url:
        raise ValueError("callback URL must not be empty")
    query = urlencode({"tag": LOGIN_TAG, "k1": challenge_id.hex()})
    sep = "&" if "?" in callback_url else "?"
    return f"{callback_url}{sep}{query}"


def encode_lnurl(challenge_id: bytes, callback_url: str) -> str:
    """
    Encode a challenge as a lowercase LNURL string.

    Pure function; raises ValueError for an empty callback URL.
    """
    url = login_url(challenge_id, callback_url)
    data = convertbits(url.encode("utf-8"), 8, 5)
    return bech32_encode(LNURL_HRP, data)


def decode_lnurl(lnurl: str) -> str:
    """
    Decode an LNURL back to the URL it wraps.

    Accepts upper or lower case (not mixed) and an optional "lightning:"
    scheme. Raises ValueError on a bad prefix, character or checksum.
    """
    s = str(lnurl).strip()
    if s.lower().startswith("lightning:"):
        s = s[len("lightning:"):]

    if s.lower() != s and s.upper() != s:
        raise ValueError("mixed-case bech32 string")
    s = s.lower()

    pos = s.rfind("1")
    if pos < 1 or pos + 7 > len(s):
        raise ValueError("missing bech32 separator or checksum")

    hrp = s[:pos]
    if hrp != LNURL_HRP:
        raise ValueError(f"unexpected prefix: {hrp!r}")

    data = []
    for ch in s[pos + 1:]:
        d = CHARSET.find(ch)
        if d == -1:
            raise ValueError(f"invalid bech32 character: {ch!r}")
        data.append(d)

    if not bech32_verify_checksum(hrp, data):
        raise ValueError("bad bech32 checksum")

    raw = convertbits(data[:-6], 5, 8, False)
    if raw is None:
        raise ValueError("invalid bech32 padding")
    return bytes(raw).decode("utf-8")


def challenge_from_lnurl(lnurl: str) -> bytes:
    """Extract the raw k1 challenge from an LNURL login string."""
    query = parse_qs(urlparse(decode_lnurl(lnurl)).query)
    if query.get("tag") != [LOGIN_TAG]:
        raise ValueError("not an LNURL login")
    k1 = query.get("k1", [""])[0]
    return bytes.fromhex(k1)
