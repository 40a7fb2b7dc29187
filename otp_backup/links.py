"""``otpauth://`` links written next to the structured backup for portability."""
from __future__ import annotations

from typing import Iterable, Mapping
from urllib.parse import quote, urlencode


def format_otpauth_uri(item: Mapping) -> str:
    """Return the ``otpauth://`` URI for *item*, or an empty string without a secret."""

    if not isinstance(item, Mapping) or not item.get("secret"):
        return ""
    otp_type = item.get("type") or "totp"
    issuer = item.get("issuer") or ""
    name = item.get("account") or item.get("name") or "Account"
    label = f"{issuer}:{name}" if issuer else name

    params = [("secret", item["secret"])]
    if issuer:
        params.append(("issuer", issuer))
    if item.get("digits") and item["digits"] != 6:
        params.append(("digits", str(item["digits"])))
    if item.get("period") and item["period"] != 30:
        params.append(("period", str(item["period"])))
    algorithm = str(item.get("algorithm") or "SHA1").upper()
    if algorithm != "SHA1":
        params.append(("algorithm", algorithm))
    if otp_type == "hotp" and item.get("counter") is not None:
        params.append(("counter", str(item["counter"])))

    return f"otpauth://{otp_type}/{quote(label, safe='')}?{urlencode(params)}"


def format_listing(items: Iterable[Mapping], formatter=format_otpauth_uri) -> str:
    """One link per line; items the formatter cannot express are skipped."""

    return "\n".join(link for link in (formatter(item) for item in items) if link)


__all__ = ["format_listing", "format_otpauth_uri"]
