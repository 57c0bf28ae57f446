import argparse
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from plancoach.agent import CoachAgent, build_agent
from plancoach.config import get_settings
from plancoach.errors import StoreWriteFailure
from plancoach.logging_setup import configure_logging
from plancoach.models import TurnResult

configure_logging()
logger = logging.getLogger(__name__)


class Message(BaseModel):
    role: str
    content: str


class TurnRequest(BaseModel):
    message: str
    history: List[Message] = []
    # When omitted, the state saved for the user after the previous turn is used.
    session_state: Optional[Dict[str, Any]] = None


class CheckupRequest(BaseModel):
    session_state: Optional[Dict[str, Any]] = None


app = FastAPI()

# Allow the Vite dev server to talk to this API during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_agent: Optional[CoachAgent] = None


def get_agent() -> CoachAgent:
    global _agent
    if _agent is None:
        _agent = build_agent()
    return _agent


def _load_state(agent: CoachAgent, user_id: str, provided: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if provided is not None:
        return provided
    try:
        return agent.repository.load_session(user_id) or {}
    except StoreWriteFailure as e:
        raise HTTPException(status_code=503, detail=f"Session store unavailable: {e}")


def _save_state(agent: CoachAgent, user_id: str, result: TurnResult) -> None:
    try:
        agent.repository.save_session(user_id, result.new_session_state)
    except StoreWriteFailure as e:
        # The caller still receives the new state and can send it back next turn.
        logger.warning("[API] Could not save session for %s: %s", user_id, e)


@app.get("/api/health")
def health():
    return {"ok": True}


@app.post("/api/chat/{user_id}/turn")
async def chat_turn(user_id: str, payload: TurnRequest, agent: CoachAgent = Depends(get_agent)):
    """Run one conversational turn and persist the resulting session state."""
    state = _load_state(agent, user_id, payload.session_state)
    history = [m.model_dump() for m in payload.history]

    def _call():
        result = agent.process_turn(user_id, payload.message, history, state)
        _save_state(agent, user_id, result)
        return result

    result = await run_in_threadpool(_call)
    return result.model_dump(mode="json")


@app.post("/api/checkup/{user_id}/start")
async def start_checkup(user_id: str, payload: Optional[CheckupRequest] = None, agent: CoachAgent = Depends(get_agent)):
    state = _load_state(agent, user_id, payload.session_state if payload else None)

    def _call():
        result = agent.start_checkup(user_id, state)
        _save_state(agent, user_id, result)
        return result

    result = await run_in_threadpool(_call)
    return result.model_dump(mode="json")


@app.post("/api/plan/{user_id}/reconcile")
def reconcile_plan(user_id: str, agent: CoachAgent = Depends(get_agent)):
    """Project normalized rows back into the plan document after uncertain writes."""
    try:
        repaired = agent.adapter.reconcile_plan(user_id)
    except StoreWriteFailure as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": True, "repaired": repaired}


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind the server")
    parser.add_argument("--port", type=int, default=8000, help="Port for the HTTP server")
    args = parser.parse_args()

    import uvicorn
    logger.info("[API] Starting server on %s:%s", args.host, args.port)
    uvicorn.run("backend.api:app", host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
