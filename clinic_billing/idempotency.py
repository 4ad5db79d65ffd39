"""Idempotency utilities for safely handling duplicate billing requests.

Idempotency keys are stored with a hash of the request payload. The first
request creates the record and, once processed, stores its response; a
retry with the same key and payload gets that stored response back. A key
reused with a different payload is a conflict.
"""

import hashlib
import json

from sqlalchemy.exc import IntegrityError

from .models import IdempotencyKeyModel


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators so
    the same logical body always hashes the same.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def get_or_create_idempotent(session_factory, key: str, payload: dict):
    """Get-or-create an idempotency record for ``key``.

    Returns:
        tuple[bool, IdempotencyKeyModel]: ``(existing, rec)``. ``existing``
        is False when the record was created by this call, in which case
        the caller processes the request and calls ``finalize``.

    Raises:
        ValueError: ``"IDEMPOTENCY_CONFLICT"`` when the key exists with a
            different payload hash.
    """
    h = _hash(payload)

    with session_factory() as s:
        try:
            with s.begin():
                rec = IdempotencyKeyModel(key=key, request_hash=h, response_status=0, response_body={})
                s.add(rec)
            return False, rec
        except IntegrityError:
            pass

    with session_factory() as s:
        rec = s.get(IdempotencyKeyModel, key)
        if rec is None:
            # released between the two sessions; the caller may retry
            raise ValueError("IDEMPOTENCY_IN_PROGRESS")
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(session_factory, key: str, status_code: int, body: dict, order_id=None) -> None:
    """Persist the final response so retries can replay it."""
    with session_factory() as s, s.begin():
        rec = s.get(IdempotencyKeyModel, key)
        if rec is None:
            return
        rec.response_status = status_code
        rec.response_body = body
        if order_id is not None:
            rec.order_id = order_id


def release(session_factory, key: str) -> None:
    """Forget ``key`` so a failed request can be retried with it."""
    with session_factory() as s, s.begin():
        rec = s.get(IdempotencyKeyModel, key)
        if rec is not None:
            s.delete(rec)
