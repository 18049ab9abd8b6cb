import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import Settings, get_settings
from .errors import AuthorizationError, QuizError, TransientError, VersionConflict
from .events import EventStore
from .game import QuizController
from .gateway import QuizGateway
from .models import OwnerStats, Quiz, ResultRecord
from .schemas import AdvanceOut, AnswerIn, CreateQuizIn, JoinIn, PublicQuizOut
from .utils import now

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway = QuizGateway(settings)
        await gateway.open()
        app.state.controller = QuizController(
            gateway,
            events=EventStore(gateway),
            code_length=settings.QUIZ_CODE_LENGTH,
        )
        logger.info("Quiz API ready")

        yield

        logger.info("Shutting down quiz API")
        await gateway.close()

    app = FastAPI(title="Quizroom API", lifespan=lifespan)
    app.state.settings = settings

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuizError)
    async def quiz_error_handler(request: Request, exc: QuizError):
        if isinstance(exc, TransientError):
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    app.include_router(router)
    return app


def get_controller(request: Request) -> QuizController:
    return request.app.state.controller


def require_user(x_user_id: str = Header()) -> str:
    return x_user_id


router = APIRouter(prefix="/api")


@router.get("/health")
async def health():
    return {"status": "OK", "timestamp": now().isoformat()}


@router.post("/quizzes", response_model=Quiz, status_code=201)
async def create_quiz(payload: CreateQuizIn, controller: QuizController = Depends(get_controller)):
    return await controller.create(payload.title, payload.questions, payload.owner_id)


@router.get("/quizzes/owner/{owner_id}", response_model=List[Quiz])
async def list_owner_quizzes(
    owner_id: str,
    search: Optional[str] = None,
    user_id: str = Depends(require_user),
    controller: QuizController = Depends(get_controller),
):
    if user_id != owner_id:
        raise AuthorizationError("You can only browse your own quizzes")
    return await controller.library(owner_id, search=search)


@router.get("/quizzes/owner/{owner_id}/stats", response_model=OwnerStats)
async def owner_stats(
    owner_id: str,
    user_id: str = Depends(require_user),
    controller: QuizController = Depends(get_controller),
):
    if user_id != owner_id:
        raise AuthorizationError("You can only view your own statistics")
    return await controller.owner_stats(owner_id)


@router.get("/quizzes/{quiz_id}", response_model=PublicQuizOut)
async def get_quiz(quiz_id: str, controller: QuizController = Depends(get_controller)):
    return PublicQuizOut.from_quiz(await controller.get_quiz(quiz_id))


@router.delete("/quizzes/{quiz_id}")
async def delete_quiz(
    quiz_id: str,
    user_id: str = Depends(require_user),
    controller: QuizController = Depends(get_controller),
):
    await controller.delete(quiz_id, user_id)
    return {"ok": True}


@router.post("/quizzes/{quiz_id}/join")
async def join(quiz_id: str, payload: JoinIn, request: Request, controller: QuizController = Depends(get_controller)):
    retries = request.app.state.settings.JOIN_CONFLICT_RETRIES
    attempt = 0
    while True:
        try:
            player = await controller.join(quiz_id, payload.display_name, player_id=payload.player_id)
            break
        except VersionConflict:
            if attempt >= retries:
                raise
            attempt += 1
            logger.info("Join on %s raced another write, retrying (%d/%d)", quiz_id, attempt, retries)
    return {"player": player.model_dump()}


@router.post("/quizzes/{quiz_id}/start", response_model=PublicQuizOut)
async def start(
    quiz_id: str,
    user_id: str = Depends(require_user),
    controller: QuizController = Depends(get_controller),
):
    return PublicQuizOut.from_quiz(await controller.start(quiz_id, user_id))


@router.post("/quizzes/{quiz_id}/advance", response_model=AdvanceOut)
async def advance(
    quiz_id: str,
    user_id: str = Depends(require_user),
    controller: QuizController = Depends(get_controller),
):
    outcome = await controller.advance(quiz_id, user_id)
    if isinstance(outcome, Quiz):
        return AdvanceOut(status=outcome.status, quiz=PublicQuizOut.from_quiz(outcome))
    return AdvanceOut(status="finished", leaderboard=outcome)


@router.post("/quizzes/{quiz_id}/rehost", response_model=PublicQuizOut)
async def rehost(
    quiz_id: str,
    user_id: str = Depends(require_user),
    controller: QuizController = Depends(get_controller),
):
    return PublicQuizOut.from_quiz(await controller.rehost(quiz_id, user_id))


@router.post("/quizzes/{quiz_id}/answers")
async def answer(quiz_id: str, payload: AnswerIn, controller: QuizController = Depends(get_controller)):
    await controller.submit(quiz_id, payload.player_id, payload.question_index, payload.option_index)
    return {"accepted": True}


@router.get("/quizzes/{quiz_id}/leaderboard", response_model=List[ResultRecord])
async def leaderboard(quiz_id: str, controller: QuizController = Depends(get_controller)):
    return await controller.leaderboard(quiz_id)


@router.get("/quizzes/{quiz_id}/events")
async def list_events(
    quiz_id: str,
    after: int | None = None,
    limit: int = 200,
    controller: QuizController = Depends(get_controller),
):
    events = await controller.events.list(quiz_id, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@router.get("/results/player/{player_id}", response_model=List[ResultRecord])
async def player_results(player_id: str, controller: QuizController = Depends(get_controller)):
    return await controller.player_history(player_id)


app = create_app()
