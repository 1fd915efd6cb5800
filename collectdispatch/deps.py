"""
Request-scoped wiring of the dispatch services.
The emitter lives on app.state so tests can swap in a recording one.
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .db import get_db
from .services.matching import AssignmentEngine
from .services.proof import ProofOfCollectionVerifier, verifier
from .services.state_machine import MissionStateMachine
from .services.webhooks import EventEmitter


def get_emitter(request: Request) -> EventEmitter:
    emitter = getattr(request.app.state, "emitter", None)
    if emitter is None:
        emitter = EventEmitter()
        request.app.state.emitter = emitter
    return emitter


def get_verifier() -> ProofOfCollectionVerifier:
    return verifier


def get_state_machine(
    emitter: EventEmitter = Depends(get_emitter),
    proof_verifier: ProofOfCollectionVerifier = Depends(get_verifier),
) -> MissionStateMachine:
    return MissionStateMachine(emitter=emitter, verifier=proof_verifier)


def get_engine(
    db: Session = Depends(get_db),
    state_machine: MissionStateMachine = Depends(get_state_machine),
) -> AssignmentEngine:
    return AssignmentEngine(db, state_machine)
