"""
Proof-of-collection codes.

A code is a signed, time-boxed JSON payload, base64url encoded so it can be
rendered as a QR image and scanned back. Mission codes prove a collector was
at the pickup (before/after checkpoints); collection codes let a reporter
confirm a pickup. Both use HMAC-SHA256 under domain-separated keys.
"""
import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Dict, Optional, Sequence

import qrcode
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Mission
from .audit import create_audit_log
from .errors import ProofVerificationError, ValidationError
from .geofence import validate_coordinates
from .time_rules import from_epoch_ms, isoformat, to_epoch_ms, utcnow

logger = structlog.get_logger(__name__)

MISSION_CONTEXT = "mission"
COLLECTION_CONTEXT = "collection"

CHECKPOINT_STAGES = {
    "before": ("assigned", "in-progress"),
    "after": ("in-progress",),
}


@dataclass(frozen=True)
class IssuedCode:
    payload: Dict
    code: str


@dataclass(frozen=True)
class MissionClaim:
    mission_id: str
    collection_id: str
    issued_at_ms: int


@dataclass(frozen=True)
class CollectionClaim:
    collection_id: str
    user_id: str
    issued_at_ms: int


def encode_payload(payload: Dict) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_payload(code: str) -> Dict:
    """Inverse of encode_payload. Anything that does not round-trip is a tamper."""
    if not isinstance(code, str) or not code.strip():
        raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code data")
    code = code.strip()
    if code.startswith("{"):
        raw = code.encode("utf-8")
    else:
        try:
            raw = base64.urlsafe_b64decode(code.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError):
            raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code data")
        # Reject non-canonical encodings that decode to the same bytes
        if base64.urlsafe_b64encode(raw).decode("ascii") != code:
            raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code data")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code data")
    if not isinstance(payload, dict):
        raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code format")
    return payload


def render_qr(code: str, box_size: Optional[int] = None) -> str:
    """Render a code as a PNG data URL"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size or settings.qr_box_size,
        border=1,
    )
    qr.add_data(code)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class ProofOfCollectionVerifier:
    def __init__(
        self,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self._secret = (secret or settings.qr_secret).encode("utf-8")
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.qr_ttl_seconds
        self._clock = clock

    def _sign(self, context: str, *parts) -> str:
        key = hmac.new(self._secret, context.encode("utf-8"), hashlib.sha256).digest()
        message = "\x1f".join(str(p) for p in parts).encode("utf-8")
        return hmac.new(key, message, hashlib.sha256).hexdigest()

    def _now_ms(self, now=None) -> int:
        return to_epoch_ms(now or self._clock())

    def _check(self, payload: Dict, context: str, fields: Sequence[str], now=None) -> int:
        for field in (*fields, "timestamp", "hash"):
            if payload.get(field) in (None, ""):
                raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code format")
        timestamp = payload["timestamp"]
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code format")
        expected = self._sign(context, *(payload[f] for f in fields), timestamp)
        signature = payload["hash"]
        if not isinstance(signature, str) or not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            raise ProofVerificationError(ProofVerificationError.TAMPER)
        if self._now_ms(now) - timestamp > self.ttl_seconds * 1000:
            raise ProofVerificationError(ProofVerificationError.EXPIRED)
        return timestamp

    def issue(self, mission_id, collection_id, now=None) -> IssuedCode:
        timestamp = self._now_ms(now)
        payload = {
            "missionId": str(mission_id),
            "collectionId": str(collection_id),
            "timestamp": timestamp,
        }
        payload["hash"] = self._sign(MISSION_CONTEXT, payload["missionId"], payload["collectionId"], timestamp)
        return IssuedCode(payload=payload, code=encode_payload(payload))

    def verify(self, code: str, now=None) -> MissionClaim:
        payload = decode_payload(code)
        if payload.get("type", MISSION_CONTEXT) != MISSION_CONTEXT:
            raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code format")
        timestamp = self._check(payload, MISSION_CONTEXT, ("missionId", "collectionId"), now)
        return MissionClaim(str(payload["missionId"]), str(payload["collectionId"]), timestamp)

    def issue_collection(self, collection_id, user_id, now=None) -> IssuedCode:
        timestamp = self._now_ms(now)
        payload = {
            "type": COLLECTION_CONTEXT,
            "collectionId": str(collection_id),
            "userId": str(user_id),
            "timestamp": timestamp,
        }
        payload["hash"] = self._sign(COLLECTION_CONTEXT, payload["collectionId"], payload["userId"], timestamp)
        return IssuedCode(payload=payload, code=encode_payload(payload))

    def verify_collection(self, code: str, now=None) -> CollectionClaim:
        payload = decode_payload(code)
        if payload.get("type") != COLLECTION_CONTEXT:
            raise ProofVerificationError(ProofVerificationError.TAMPER, "Invalid QR code format")
        timestamp = self._check(payload, COLLECTION_CONTEXT, ("collectionId", "userId"), now)
        return CollectionClaim(str(payload["collectionId"]), str(payload["userId"]), timestamp)

    def capture_checkpoint(
        self,
        db: Session,
        mission: Mission,
        stage: str,
        code: str,
        photo_url: Optional[str],
        coordinates: Sequence,
        actor_id: Optional[str] = None,
        now=None,
    ) -> Mission:
        """
        Attach a verified before/after checkpoint to a mission.
        The code must have been issued for this very mission and collection.
        """
        if stage not in CHECKPOINT_STAGES:
            raise ValidationError("stage must be 'before' or 'after'", field="stage")
        if mission.status not in CHECKPOINT_STAGES[stage]:
            raise ValidationError(
                f"A '{stage}' checkpoint cannot be captured while the mission is '{mission.status}'",
                field="stage",
            )
        now = now or self._clock()
        claim = self.verify(code, now)
        if claim.mission_id != str(mission.id) or claim.collection_id != str(mission.collection_id):
            raise ProofVerificationError(ProofVerificationError.TAMPER, "QR code does not belong to this mission")
        lng, lat = validate_coordinates(coordinates)

        proofs = dict(mission.proofs or {})
        proofs[stage] = {
            "photo": photo_url,
            "timestamp": isoformat(now),
            "location": {"type": "Point", "coordinates": [lng, lat]},
            "codeIssuedAt": isoformat(from_epoch_ms(claim.issued_at_ms)),
        }
        mission.proofs = proofs
        mission.updated_at = now
        create_audit_log(
            db,
            action="mission.proof_captured",
            target_type="mission",
            target_id=str(mission.id),
            actor_id=actor_id,
            organization_id=str(mission.organization_id),
            metadata={"stage": stage, "coordinates": [lng, lat]},
        )
        db.commit()
        logger.info("proof_captured", mission_id=str(mission.id), stage=stage)
        return mission


verifier = ProofOfCollectionVerifier()
