"""Unit tests for proof-of-collection codes and checkpoints."""

import base64
import json
import uuid
from datetime import timedelta

import pytest

from collectdispatch.models.models import AuditLog
from collectdispatch.services.errors import ProofVerificationError, ValidationError
from collectdispatch.services.matching import AssignmentEngine
from collectdispatch.services.proof import (
    ProofOfCollectionVerifier,
    decode_payload,
    encode_payload,
    render_qr,
    verifier,
)
from collectdispatch.services.time_rules import utcnow

from conftest import make_collector, make_mission, make_org

T0 = utcnow().replace(microsecond=0)


@pytest.fixture
def qr() -> ProofOfCollectionVerifier:
    return ProofOfCollectionVerifier(secret="unit-secret", ttl_seconds=24 * 3600)


def _ids():
    return str(uuid.uuid4()), str(uuid.uuid4())


def _alter(code: str, index: int) -> str:
    replacement = "A" if code[index] != "A" else "B"
    return code[:index] + replacement + code[index + 1:]


class TestMissionCodes:
    def test_verifies_immediately(self, qr) -> None:
        mission_id, collection_id = _ids()
        issued = qr.issue(mission_id, collection_id, now=T0)
        claim = qr.verify(issued.code, now=T0)
        assert (claim.mission_id, claim.collection_id) == (mission_id, collection_id)
        assert claim.issued_at_ms == issued.payload["timestamp"]

    def test_valid_just_inside_ttl(self, qr) -> None:
        issued = qr.issue(*_ids(), now=T0)
        qr.verify(issued.code, now=T0 + timedelta(hours=23, minutes=59))

    def test_valid_exactly_at_ttl(self, qr) -> None:
        issued = qr.issue(*_ids(), now=T0)
        qr.verify(issued.code, now=T0 + timedelta(hours=24))

    def test_expired_after_ttl(self, qr) -> None:
        issued = qr.issue(*_ids(), now=T0)
        with pytest.raises(ProofVerificationError) as exc:
            qr.verify(issued.code, now=T0 + timedelta(hours=24, minutes=1))
        assert exc.value.code == ProofVerificationError.EXPIRED

    @pytest.mark.parametrize("field", ["missionId", "collectionId"])
    def test_edited_field_is_tamper(self, qr, field) -> None:
        issued = qr.issue(*_ids(), now=T0)
        payload = dict(issued.payload, **{field: str(uuid.uuid4())})
        with pytest.raises(ProofVerificationError) as exc:
            qr.verify(encode_payload(payload), now=T0)
        assert exc.value.code == ProofVerificationError.TAMPER

    def test_extended_timestamp_is_tamper_not_expired(self, qr) -> None:
        issued = qr.issue(*_ids(), now=T0)
        payload = dict(issued.payload, timestamp=issued.payload["timestamp"] + 3600 * 1000)
        with pytest.raises(ProofVerificationError) as exc:
            qr.verify(encode_payload(payload), now=T0 + timedelta(hours=30))
        assert exc.value.code == ProofVerificationError.TAMPER

    def test_any_altered_character_is_rejected(self, qr) -> None:
        issued = qr.issue(*_ids(), now=T0)
        for index in range(len(issued.code)):
            with pytest.raises(ProofVerificationError) as exc:
                qr.verify(_alter(issued.code, index), now=T0)
            assert exc.value.code == ProofVerificationError.TAMPER

    def test_missing_hash(self, qr) -> None:
        issued = qr.issue(*_ids(), now=T0)
        payload = {k: v for k, v in issued.payload.items() if k != "hash"}
        with pytest.raises(ProofVerificationError):
            qr.verify(encode_payload(payload), now=T0)

    def test_other_secret_rejected(self, qr) -> None:
        issued = ProofOfCollectionVerifier(secret="other-secret").issue(*_ids(), now=T0)
        with pytest.raises(ProofVerificationError):
            qr.verify(issued.code, now=T0)

    def test_raw_json_accepted(self, qr) -> None:
        issued = qr.issue(*_ids(), now=T0)
        assert qr.verify(json.dumps(issued.payload), now=T0).mission_id == issued.payload["missionId"]

    @pytest.mark.parametrize("code", ["", "   ", "not base64!", "W10=", encode_payload({"a": 1})[:-2] + "=="])
    def test_garbage_is_tamper(self, qr, code) -> None:
        with pytest.raises(ProofVerificationError) as exc:
            qr.verify(code, now=T0)
        assert exc.value.code == ProofVerificationError.TAMPER


class TestCollectionCodes:
    def test_round_trip(self, qr) -> None:
        collection_id, user_id = _ids()
        claim = qr.verify_collection(qr.issue_collection(collection_id, user_id, now=T0).code, now=T0)
        assert (claim.collection_id, claim.user_id) == (collection_id, user_id)

    def test_not_interchangeable_with_mission_codes(self, qr) -> None:
        collection_code = qr.issue_collection(*_ids(), now=T0).code
        mission_code = qr.issue(*_ids(), now=T0).code
        with pytest.raises(ProofVerificationError):
            qr.verify(collection_code, now=T0)
        with pytest.raises(ProofVerificationError):
            qr.verify_collection(mission_code, now=T0)

    def test_relabelled_collection_code_fails_signature(self, qr) -> None:
        # Same id fields under the mission context do not verify
        mission_id, collection_id = _ids()
        payload = dict(qr.issue_collection(collection_id, mission_id, now=T0).payload)
        forged = {
            "missionId": payload["userId"],
            "collectionId": payload["collectionId"],
            "timestamp": payload["timestamp"],
            "hash": payload["hash"],
        }
        with pytest.raises(ProofVerificationError):
            qr.verify(encode_payload(forged), now=T0)


class TestEncoding:
    def test_encoding_is_canonical(self) -> None:
        assert encode_payload({"b": 1, "a": 2}) == encode_payload({"a": 2, "b": 1})
        assert decode_payload(encode_payload({"a": 2})) == {"a": 2}

    def test_non_canonical_encoding_rejected(self) -> None:
        raw = base64.urlsafe_b64encode(b'{"a":1}').decode("ascii")
        with pytest.raises(ProofVerificationError):
            decode_payload(raw.rstrip("="))

    def test_render_qr_is_png_data_url(self) -> None:
        url = render_qr("hello", box_size=2)
        prefix = "data:image/png;base64,"
        assert url.startswith(prefix)
        assert base64.b64decode(url[len(prefix):])[:8] == b"\x89PNG\r\n\x1a\n"


class TestCheckpoints:
    @pytest.fixture
    def mission(self, db, state_machine):
        org = make_org(db)
        make_collector(db, org)
        mission = make_mission(db, state_machine, org)
        return AssignmentEngine(db, state_machine).assign(mission.id)

    def _code(self, mission) -> str:
        return verifier.issue(mission.id, mission.collection_id).code

    def test_before_checkpoint_stored(self, db, mission) -> None:
        verifier.capture_checkpoint(
            db, mission, "before", self._code(mission), "https://cdn.example.com/b.jpg", [-79.38, 43.65]
        )
        db.refresh(mission)
        before = mission.proofs["before"]
        assert before["photo"] == "https://cdn.example.com/b.jpg"
        assert before["location"] == {"type": "Point", "coordinates": [-79.38, 43.65]}
        assert before["codeIssuedAt"].endswith("Z")
        assert db.query(AuditLog).filter_by(action="mission.proof_captured").count() == 1

    def test_after_checkpoint_needs_in_progress(self, db, mission) -> None:
        with pytest.raises(ValidationError) as exc:
            verifier.capture_checkpoint(db, mission, "after", self._code(mission), None, [0, 0])
        assert exc.value.errors[0]["field"] == "stage"

    def test_unknown_stage(self, db, mission) -> None:
        with pytest.raises(ValidationError):
            verifier.capture_checkpoint(db, mission, "during", self._code(mission), None, [0, 0])

    def test_code_for_other_mission_is_tamper(self, db, mission) -> None:
        code = verifier.issue(uuid.uuid4(), mission.collection_id).code
        with pytest.raises(ProofVerificationError) as exc:
            verifier.capture_checkpoint(db, mission, "before", code, None, [0, 0])
        assert exc.value.code == ProofVerificationError.TAMPER

    def test_bad_coordinates(self, db, mission) -> None:
        with pytest.raises(ValidationError) as exc:
            verifier.capture_checkpoint(db, mission, "before", self._code(mission), None, [0, 95])
        assert exc.value.errors[0]["field"] == "coordinates"
