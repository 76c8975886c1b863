"""
License key issuance, listing, redemption and expiry.
"""
import secrets
import string
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy.orm import Session

from models import LicenseBatch, LicenseKey, LICENSE_TYPES, LICENSE_STATUSES
from observability import structured_logger, metrics

KEY_ALPHABET = string.ascii_uppercase + string.digits
KEY_LENGTH = 16
MAX_BATCH_SIZE = 1000

# Used when a key has no batch to take its duration from
DEFAULT_DURATION_DAYS = {"monthly": 30, "yearly": 365}


class LicenseError(ValueError):
    """Raised for invalid license operations (bad input, unknown or used key)."""


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from the database as UTC."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def generate_license_key() -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))


def _unique_keys(db: Session, count: int) -> List[str]:
    keys: set[str] = set()
    while len(keys) < count:
        candidates = {generate_license_key() for _ in range(count - len(keys))} - keys
        taken = {
            row[0] for row in db.query(LicenseKey.key).filter(LicenseKey.key.in_(list(candidates))).all()
        }
        keys.update(candidates - taken)
    return list(keys)


def create_batch(
    db: Session,
    name: str,
    license_type: str,
    count: int,
    duration_days: int,
    notes: Optional[str] = None,
    created_by: str = "admin",
) -> Tuple[LicenseBatch, List[LicenseKey]]:
    """Create a batch record and `count` fresh unused keys in one transaction."""
    if not name:
        raise LicenseError("batch name is required")
    if license_type not in LICENSE_TYPES:
        raise LicenseError(f"unknown license type: {license_type}")
    if count < 1 or count > MAX_BATCH_SIZE:
        raise LicenseError(f"count must be between 1 and {MAX_BATCH_SIZE}")
    if duration_days < 0:
        raise LicenseError("duration must not be negative")

    batch = LicenseBatch(
        name=name,
        type=license_type,
        count=count,
        duration_days=duration_days,
        created_by=created_by,
        notes=notes,
    )
    db.add(batch)
    db.flush()

    keys = [
        LicenseKey(key=key, type=license_type, batch_id=batch.id, notes=notes)
        for key in _unique_keys(db, count)
    ]
    db.add_all(keys)
    db.commit()
    db.refresh(batch)

    metrics.inc_counter("license_keys_issued_total", {"type": license_type}, value=count)
    structured_logger.log_event(
        "license.batch_created",
        batch_id=batch.id,
        license_type=license_type,
        count=count,
        duration_days=duration_days
    )
    return batch, keys


def list_licenses(
    db: Session,
    status: Optional[str] = None,
    license_type: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> List[LicenseKey]:
    if status and status not in LICENSE_STATUSES:
        raise LicenseError(f"unknown license status: {status}")

    query = db.query(LicenseKey)
    if status:
        query = query.filter(LicenseKey.status == status)
    if license_type:
        query = query.filter(LicenseKey.type == license_type)
    if batch_id:
        query = query.filter(LicenseKey.batch_id == batch_id)
    return query.order_by(LicenseKey.created_at, LicenseKey.key).all()


def redeem_license(db: Session, key: str, client_id: str, now: Optional[datetime] = None) -> LicenseKey:
    """
    Bind an unused key to a client and start its validity period.
    Lifetime keys never expire.
    """
    if not key or not client_id:
        raise LicenseError("key and clientId are required")

    now = now or datetime.now(timezone.utc)
    license_key = db.query(LicenseKey).filter(
        LicenseKey.key == key,
        LicenseKey.status == "unused"
    ).first()

    if not license_key:
        metrics.inc_counter("license_redemptions_total", {"outcome": "rejected"})
        structured_logger.log_event("license.redeem_rejected", level="WARN", client_id=client_id)
        raise LicenseError("invalid license key")

    if license_key.type == "lifetime":
        expires_at = None
    else:
        duration_days = DEFAULT_DURATION_DAYS.get(license_key.type, 30)
        if license_key.batch_id:
            batch = db.get(LicenseBatch, license_key.batch_id)
            if batch is not None and batch.duration_days > 0:
                duration_days = batch.duration_days
        expires_at = now + timedelta(days=duration_days)

    license_key.status = "used"
    license_key.used_at = now
    license_key.used_by = client_id
    license_key.expires_at = expires_at
    db.commit()
    db.refresh(license_key)

    metrics.inc_counter("license_redemptions_total", {"outcome": "redeemed"})
    structured_logger.log_event(
        "license.redeemed",
        license_id=license_key.id,
        client_id=client_id,
        license_type=license_key.type,
        expires_at=expires_at
    )
    return license_key


def expire_licenses(db: Session, now: Optional[datetime] = None) -> int:
    """Mark redeemed keys whose validity has run out as expired."""
    now = now or datetime.now(timezone.utc)
    candidates = db.query(LicenseKey).filter(
        LicenseKey.status == "used",
        LicenseKey.expires_at.isnot(None)
    ).all()

    expired = 0
    for license_key in candidates:
        if ensure_utc(license_key.expires_at) <= now:
            license_key.status = "expired"
            expired += 1

    if expired:
        db.commit()
        structured_logger.log_event("license.expired", count=expired)
    return expired


def license_to_dict(license_key: LicenseKey) -> Dict[str, Any]:
    def iso(dt):
        dt = ensure_utc(dt)
        return dt.isoformat() if dt else None

    return {
        "id": license_key.id,
        "key": license_key.key,
        "type": license_key.type,
        "status": license_key.status,
        "createdAt": iso(license_key.created_at),
        "usedAt": iso(license_key.used_at),
        "expiresAt": iso(license_key.expires_at),
        "usedBy": license_key.used_by,
        "batchId": license_key.batch_id,
        "notes": license_key.notes,
    }
