# idempotency.py
import hashlib
import json


def derive_key(artifact_ref, caption, publish_at):
    """Stable job key: sha256 over the three defining fields.

    The fields are JSON-encoded as a list so that a separator appearing
    inside a caption can never make two different triples collide.
    publish_at is hashed exactly as the caller sent it.
    """
    payload = json.dumps([artifact_ref, caption, publish_at], ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
