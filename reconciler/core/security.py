"""Webhook access checks: API key (constant-time, rotation aware) and source IP allow-list."""
import hmac
import ipaddress

# Header spellings accepted for the gateway API key, checked in this order
API_KEY_HEADERS = ("authorization", "x-api-key", "x-sepay-api-key")
API_KEY_QUERY_PARAMS = ("apiKey", "apikey", "api_key", "key", "token", "sepay_api_key")
_KEY_SCHEMES = ("apikey ", "bearer ")


def parse_api_key(value: str | None) -> str | None:
    """'Apikey <k>', 'Bearer <k>' or a bare key -> '<k>'. Empty -> None."""
    raw = (value or "").strip()
    if not raw:
        return None
    lower = raw.lower()
    for scheme in _KEY_SCHEMES:
        if lower.startswith(scheme):
            return raw[len(scheme) :].strip() or None
    return raw


def constant_time_equals(provided: str | None, expected: str | None) -> bool:
    """Timing-safe comparison; a length mismatch still runs a full-length compare."""
    p = (provided or "").encode("utf-8")
    e = (expected or "").encode("utf-8")
    if len(p) != len(e):
        hmac.compare_digest(e, e)
        return False
    return hmac.compare_digest(p, e)


def api_key_matches(provided: str | None, configured_keys: list[str]) -> bool:
    """True when provided equals any configured key. Every key is compared so timing does not reveal which one matched."""
    if not provided:
        return False
    matched = False
    for key in configured_keys:
        if key and constant_time_equals(provided, key):
            matched = True
    return matched


def normalize_ip(ip: str | None) -> str:
    value = (ip or "").strip()
    if value.startswith("::ffff:"):
        # IPv4-mapped IPv6
        return value[len("::ffff:") :]
    return value


def is_ip_allowed(client_ip: str | None, allowlist: list[str]) -> bool:
    """Exact IPv4/IPv6 match or CIDR containment. Unparseable client IPs are never allowed."""
    normalized = normalize_ip(client_ip)
    try:
        address = ipaddress.ip_address(normalized)
    except ValueError:
        return False
    for entry in allowlist:
        rule = (entry or "").strip()
        if not rule:
            continue
        if "/" in rule:
            try:
                network = ipaddress.ip_network(rule, strict=False)
            except ValueError:
                continue
            if address.version == network.version and address in network:
                return True
            continue
        try:
            if ipaddress.ip_address(rule) == address:
                return True
        except ValueError:
            continue
    return False
