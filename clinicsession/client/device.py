"""
ClinicSession - Device Identity

A locally generated device ID plus a best-effort fingerprint of the
host platform. The ID tags refresh tokens server-side; it is a soft
signal and never authorizes anything on its own.
"""

import hashlib
import platform
import uuid

from clinicsession.client.storage import SessionStore


def device_fingerprint() -> str:
    """SHA-256 over stable platform properties."""
    parts = [
        platform.system(),
        platform.release(),
        platform.machine(),
        platform.python_implementation(),
        platform.node(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def get_or_create_device_id(store: SessionStore) -> str:
    """
    Return the stored device ID, generating one on first use.

    The ID survives logout; only the token keys are cleared.
    """
    device_id = store.device_id
    if not device_id:
        device_id = f"dev_{uuid.uuid4().hex}_{device_fingerprint()[:16]}"
        store.device_id = device_id
    return device_id
