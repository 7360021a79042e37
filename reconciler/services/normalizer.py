"""Maps a gateway webhook body onto CanonicalTransaction. Pure: no I/O, no settings lookups."""
import hashlib
import json
import re
from typing import Any
from urllib.parse import parse_qsl

from reconciler.schemas.payment import CanonicalTransaction

# Envelope keys a gateway may wrap the transaction in
_ENVELOPE_KEYS = ("data", "transaction", "tx", "payload", "result", "event", "body")
_MAX_UNWRAP_DEPTH = 5

_TRANSFER_IN = {"in", "credit", "incoming", "receive", "received", "deposit"}
_TRANSFER_OUT = {"out", "debit", "outgoing", "send", "sent", "withdraw", "withdrawal"}

# Upper bound on a plausible transfer; larger magnitudes read as an unreadable amount
MAX_VND_AMOUNT = 10**15

_ID_KEYS = (
    "id", "transactionId", "transaction_id", "transId", "trans_id", "txnId", "txn_id",
    "txId", "tx_id", "providerTransactionId", "provider_transaction_id",
    "referenceCode", "reference_code", "refCode", "ref_code",
)
_AMOUNT_KEYS = (
    "transferAmount", "transfer_amount", "amount", "amountVnd", "amount_vnd",
    "transferAmountVnd", "transfer_amount_vnd",
)
_DATE_KEYS = ("transactionDate", "transaction_date", "transactionTime", "transaction_time")
_ACCOUNT_KEYS = ("accountNumber", "account_number", "bankAccountNumber", "bank_account_number", "account")
_REFERENCE_KEYS = ("referenceCode", "reference_code", "refCode", "ref_code")
_CONTENT_KEYS = (
    "content", "transferContent", "transfer_content", "contentText", "content_text",
    "description", "note",
)
_TYPE_KEYS = ("transferType", "transfer_type", "type", "transactionType", "transaction_type", "direction")


def _first(tx: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = tx.get(key)
        if value is not None:
            return value
    return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _try_parse_json(text: str) -> Any:
    text = text.strip()
    if not text or text[0] not in "{[":
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def _try_parse_urlencoded(text: str) -> dict | None:
    text = text.strip()
    if not text or "=" not in text:
        return None
    parsed = dict(parse_qsl(text, keep_blank_values=True))
    return parsed or None


def coerce_body(body: Any) -> tuple[Any, Any]:
    """
    Returns (parsed, raw_for_storage).
    Accepts an already-decoded object, or bytes/str holding JSON or form-encoded text.
    """
    if isinstance(body, (dict, list)):
        return body, body
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        text = body.strip()
        if not text:
            return {}, ""
        parsed = _try_parse_json(text)
        if parsed is None:
            parsed = _try_parse_urlencoded(text)
        return (parsed if parsed is not None else {}), text
    return {}, body


def unwrap_transaction(body: Any) -> dict:
    """Walks down data/transaction/... envelopes (and single-element arrays) to the transaction object."""
    cursor = body
    for _ in range(_MAX_UNWRAP_DEPTH):
        if isinstance(cursor, list):
            cursor = cursor[0] if cursor else {}
            continue
        if not isinstance(cursor, dict):
            return {}
        nxt = _first(cursor, _ENVELOPE_KEYS)
        if isinstance(nxt, str):
            nxt = _try_parse_json(nxt)
        if isinstance(nxt, (dict, list)):
            cursor = nxt
            continue
        break
    return cursor if isinstance(cursor, dict) else {}


def parse_vnd_amount(value: Any) -> int:
    """
    Integer VND amount. Strings keep their digits only ('99.000 đ' -> 99000); a '-' anywhere negates.
    Magnitudes of MAX_VND_AMOUNT or more come back as 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        if value != value or abs(value) >= MAX_VND_AMOUNT:
            return 0
        return int(round(value))
    text = str(value if value is not None else "").strip()
    if not text:
        return 0
    digits = re.sub(r"\D", "", text).lstrip("0")
    if not digits or len(digits) > len(str(MAX_VND_AMOUNT)) - 1:
        return 0
    sign = -1 if "-" in text else 1
    return sign * int(digits)


def normalize_transfer_type(value: Any) -> str | None:
    raw = str(value if value is not None else "").strip().lower()
    if not raw:
        return None
    if raw in _TRANSFER_IN:
        return "in"
    if raw in _TRANSFER_OUT:
        return "out"
    return raw


def fingerprint_transaction(tx: dict, transfer_amount: int) -> str | None:
    """Deterministic stand-in id for payloads without one: sha256 over the identifying fields, 32 hex chars."""
    parts = [
        tx.get("gateway"),
        _first(tx, _DATE_KEYS),
        _first(tx, ("accountNumber", "account_number")),
        str(transfer_amount or 0),
        _first(tx, _REFERENCE_KEYS + ("code",)),
        _first(tx, ("content", "transferContent", "transfer_content", "description")),
    ]
    parts = [str(p).strip() for p in parts if p is not None and str(p).strip()]
    if not parts:
        return None
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]


def normalize_payload(body: Any, fingerprint_missing_id: bool = False) -> CanonicalTransaction:
    parsed, raw = coerce_body(body)
    tx = unwrap_transaction(parsed)

    transfer_amount = parse_vnd_amount(_first(tx, _AMOUNT_KEYS))
    provider_transaction_id = _as_text(_first(tx, _ID_KEYS))
    if not provider_transaction_id and fingerprint_missing_id:
        provider_transaction_id = fingerprint_transaction(tx, transfer_amount)

    content = _first(tx, _CONTENT_KEYS)
    return CanonicalTransaction(
        provider_transaction_id=provider_transaction_id,
        gateway=_as_text(_first(tx, ("gateway", "bank", "bankCode", "bank_code"))),
        transaction_date=_as_text(_first(tx, _DATE_KEYS)),
        account_number=_as_text(_first(tx, _ACCOUNT_KEYS)),
        code=_as_text(tx.get("code")),
        content=str(content) if content is not None else "",
        transfer_type=normalize_transfer_type(_first(tx, _TYPE_KEYS)),
        transfer_amount=transfer_amount,
        reference_code=_as_text(_first(tx, _REFERENCE_KEYS)),
        description=_as_text(_first(tx, ("description", "note", "message"))),
        raw=raw,
    )
