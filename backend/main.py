from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from functools import lru_cache
import traceback

from cache import TTLCache
from content import (
    AnswerResult,
    ContentGenerationFailed,
    ContentResolver,
    ExplanationResult,
    LearningPathKey,
    QuestionHistoryItem,
)
from providers import OpenAITextService, YouTubeVideoSearch
from settings import Settings, load_catalog

print(f"YOUTUBE_API_KEY loaded: {bool(Settings.YOUTUBE_API_KEY)}")
print(f"OPENAI_API_KEY loaded: {bool(Settings.OPENAI_API_KEY)}")

app = FastAPI(title="Learning Path Content API")

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_resolver() -> ContentResolver:
    """Build the process-wide resolver on first use."""
    return ContentResolver(
        text_service=OpenAITextService(
            model=Settings.OPENAI_MODEL,
            api_key=Settings.OPENAI_API_KEY,
            timeout=Settings.OPENAI_TIMEOUT_SECONDS,
        ),
        video_service=YouTubeVideoSearch(
            api_key=Settings.YOUTUBE_API_KEY,
            language=Settings.VIDEO_LANGUAGE,
        ),
        cache=TTLCache(
            default_ttl=Settings.CACHE_TTL_SECONDS,
            max_entries=Settings.CACHE_MAX_ENTRIES,
        ),
        catalog=load_catalog(Settings.SUBJECTS_FILE),
        max_history_turns=Settings.MAX_HISTORY_TURNS,
    )


# ==================== Request / Response Models ====================

class HistoryItem(BaseModel):
    """A previous question and its answer."""
    question: str
    answer: str

class ExplainRequest(BaseModel):
    subject: str
    topic: str
    subtopic: Optional[str] = None

class QuestionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str
    topic: str
    subtopic: Optional[str] = None
    question: str
    question_history: List[HistoryItem] = Field(default_factory=list, alias="questionHistory")

class ExplainResponse(BaseModel):
    explanation: str
    videoUrl: Optional[str] = None

class AnswerResponse(BaseModel):
    answer: str

class ErrorResponse(BaseModel):
    error: str
    details: str = ""


def error_response(message: str, e: Exception) -> JSONResponse:
    """Convert a failure into an {error, details} body with a matching status code."""
    if isinstance(e, ContentGenerationFailed):
        status_code = e.status_code
        print(f"{message}: {type(e).__name__} - {e}")
    else:
        status_code = 500
        print(f"{message}: unexpected {type(e).__name__} - {e}")
        traceback.print_exc()
    body = ErrorResponse(error=message, details=str(e))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies get the same {error, details} shape as other failures."""
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    print(f"Invalid request to {request.url.path}: {details}")
    body = ErrorResponse(error="Invalid request", details=details)
    return JSONResponse(status_code=422, content=body.model_dump())


# ==================== API Endpoints ====================

@app.get("/")
def read_root():
    return {"message": "Learning Path Content API", "status": "running"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}

@app.get("/subjects")
def get_subjects(resolver: ContentResolver = Depends(get_resolver)):
    """Static subject -> topics catalog."""
    return {subject: list(topics) for subject, topics in resolver.subjects().items()}

@app.get("/subtopics/{subject}/{topic}", response_model=List[str])
def get_subtopics(subject: str, topic: str, resolver: ContentResolver = Depends(get_resolver)):
    try:
        return resolver.resolve_subtopics(subject, topic)
    except Exception as e:
        return error_response("Failed to generate subtopics", e)

@app.post("/explain", response_model=ExplainResponse)
def explain(request: ExplainRequest, resolver: ContentResolver = Depends(get_resolver)):
    """Generated explanation plus an embeddable video URL (null if none was found)."""
    key = LearningPathKey(request.subject, request.topic, request.subtopic)
    try:
        result: ExplanationResult = resolver.resolve_explanation(key)
    except Exception as e:
        return error_response("Failed to generate explanation or fetch video", e)
    return result.to_dict()

@app.post("/question", response_model=AnswerResponse)
def ask_question(request: QuestionRequest, resolver: ContentResolver = Depends(get_resolver)):
    """Answer a follow-up question. The client appends the new Q/A to its own history."""
    key = LearningPathKey(request.subject, request.topic, request.subtopic)
    history = [QuestionHistoryItem(item.question, item.answer) for item in request.question_history]
    try:
        result: AnswerResult = resolver.answer_question(key, request.question, history)
    except Exception as e:
        return error_response("Failed to generate answer", e)
    return result.to_dict()


if __name__ == "__main__":
    import uvicorn
    print(f"Server running at http://localhost:{Settings.PORT}")
    uvicorn.run(app, host="0.0.0.0", port=Settings.PORT)
