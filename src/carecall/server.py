import logging
import os
from typing import Any, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from carecall.errors import ScriptGenerationError
from carecall.generation import generate_script, regenerate_options
from carecall.llm import OpenAIClient, UpstreamError, match_answer_with_llm, summarize_with_llm
from carecall.post_call import build_local_summary
from carecall.scripts import default_system_prompt

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="CareCall Backend")


class SessionRequest(BaseModel):
    patientName: Optional[str] = None
    systemPrompt: Optional[str] = None
    voice: str = "cedar"
    mode: str = "deterministic"


class MatchRequest(BaseModel):
    question: Optional[str] = None
    userResponse: str
    options: list[dict[str, Any]]


class SummaryRequest(BaseModel):
    timeline: list[dict[str, Any]] = Field(default_factory=list)
    needsCallback: bool = False
    callbackReasons: list[str] = Field(default_factory=list)


class GenerateRequest(BaseModel):
    script: str
    inputType: str = "script"
    mode: str = "deterministic"


class RegenerateOptionsRequest(BaseModel):
    question: str
    currentOptions: list[dict[str, Any]] = Field(default_factory=list)
    targetCount: int = 4
    context: str = ""


_client: Optional[OpenAIClient] = None


def get_openai() -> OpenAIClient:
    global _client
    if not os.getenv("OPENAI_API_KEY"):
        raise HTTPException(status_code=500, detail="OPENAI_API_KEY not configured")
    if _client is None:
        _client = OpenAIClient()
    return _client


def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = os.getenv("CARECALL_API_KEY")
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.exception_handler(HTTPException)
async def http_error(request, exc: HTTPException):
    # Clients read the human-readable message from "error"
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.get("/health")
async def health():
    return PlainTextResponse("ok")


@app.post("/api/session", dependencies=[Depends(require_api_key)])
async def create_session(body: SessionRequest, client: OpenAIClient = Depends(get_openai)):
    instructions = body.systemPrompt
    if not instructions or not instructions.strip():
        instructions = default_system_prompt(body.patientName or "")
    try:
        session = await client.create_realtime_session(instructions, voice=body.voice)
    except UpstreamError as e:
        raise HTTPException(status_code=e.status_code, detail=f"Failed to create session: {e}")
    logger.info("Issued realtime session (voice=%s, mode=%s)", body.voice, body.mode)
    return session


@app.post("/api/match", dependencies=[Depends(require_api_key)])
async def match(body: MatchRequest, client: OpenAIClient = Depends(get_openai)):
    if not body.userResponse or not body.options:
        raise HTTPException(status_code=400, detail="Missing required fields")
    return await match_answer_with_llm(client, body.question or "", body.userResponse, body.options)


@app.post("/api/summary", dependencies=[Depends(require_api_key)])
async def summary(body: SummaryRequest, client: OpenAIClient = Depends(get_openai)):
    if not body.timeline:
        return {"summary": build_local_summary([]).to_dict()}
    result = await summarize_with_llm(client, body.timeline, body.needsCallback, body.callbackReasons)
    return {"summary": result.to_dict()}


@app.post("/api/generate", dependencies=[Depends(require_api_key)])
async def generate(body: GenerateRequest, client: OpenAIClient = Depends(get_openai)):
    try:
        generated = await generate_script(client, body.script, body.inputType, body.mode)
    except ScriptGenerationError as e:
        status = 400 if not body.script.strip() else 502
        raise HTTPException(status_code=status, detail=str(e))
    return generated.to_dict()


@app.post("/api/regenerate-options", dependencies=[Depends(require_api_key)])
async def regenerate(body: RegenerateOptionsRequest, client: OpenAIClient = Depends(get_openai)):
    try:
        options = await regenerate_options(
            client,
            body.question,
            body.currentOptions,
            body.targetCount,
            body.context,
        )
    except ScriptGenerationError as e:
        status = 400 if not body.question.strip() else 502
        raise HTTPException(status_code=status, detail=str(e))
    return {"options": [o.to_dict() for o in options]}


if __name__ == "__main__":
    from carecall.config import validate_config

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_config()
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("carecall.server:app", host="0.0.0.0", port=port)
