from typing import Optional

from .policy import DEVICE_MISMATCH, SESSION_MISMATCH
from .store import PendingVerification


def _differs(sent: Optional[str], current: Optional[str]) -> bool:
    # only a comparison between two known values can be a mismatch
    return bool(sent) and bool(current) and sent != current


def check_consistency(
    record: PendingVerification,
    fingerprint: Optional[str],
    session_id: Optional[str],
) -> list[str]:
    """Flags describing how the verify request differs from the send request.

    The result is a signal for scoring and audit, never a reason to refuse.
    """
    flags = []
    if _differs(record.fingerprint_hash, fingerprint):
        flags.append(DEVICE_MISMATCH)
    if _differs(record.session_id, session_id):
        flags.append(SESSION_MISMATCH)
    return flags
