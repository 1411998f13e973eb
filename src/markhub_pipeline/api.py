"""
Модуль api.py
HTTP-прокси задач AI: отправка задачи и опрос результата.

POST-обработчики проверяют параметры, создают запись pending, возвращают
202 с идентификатором задачи и планируют работу через BackgroundTasks;
вызов AI никогда не ожидается внутри обработчика. GET возвращает текущее
состояние задачи. Задачи привязаны к хешу API-ключа вызывающего.
"""
import hashlib
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import Config, ConfigManager
from .content_extractor import PageContentExtractor
from .logger import get_logger
from .task_repository import InMemoryTaskRepository, RemoteTask, TaskRepository, build_task_repository
from .task_runner import TaskRunner

logger = get_logger(__name__)

API_PREFIX = "/api/v1"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:32]


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(min_length=1)
    custom_api_key: Optional[str] = Field(default=None, alias="customApiKey")
    custom_api_base_url: Optional[str] = Field(default=None, alias="customApiBaseUrl")
    custom_model_name: Optional[str] = Field(default=None, alias="customModelName")


class GenerateTagsRequest(_Request):
    filter_tags: List[str] = Field(default_factory=list)


class SuggestFolderRequest(_Request):
    folders: List[str] = Field(min_length=1)
    custom_api_key: str = Field(alias="customApiKey", min_length=1)


class TaskAccepted(BaseModel):
    task_id: str
    status: str
    status_url: str


async def require_api_key(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    """Возвращает API-ключ из заголовка Authorization: Bearer <api_key>."""
    scheme, _, token = (authorization or "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Требуется заголовок Authorization: Bearer <api_key>",
        )

    allowed = request.app.state.config.proxy_api_keys
    if allowed and token not in allowed:
        logger.warning(f"Отклонен неизвестный API-ключ (hash={hash_token(token)[:8]})")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API-ключ не принят")
    return token


def _validate_target(config: Config, runner: TaskRunner, body: _Request) -> Config:
    if not PageContentExtractor.validate_url(body.url):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Некорректный URL: {body.url}")

    ai_config = runner.ai_config(
        body.custom_api_key, body.custom_api_base_url, body.custom_model_name, base=config
    )
    if not ai_config.api_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Не задан API-ключ AI-сервиса")
    return ai_config


def create_app(
    config: Optional[Config] = None,
    repository: Optional[TaskRepository] = None,
    runner: Optional[TaskRunner] = None,
) -> FastAPI:
    """
    Создает приложение FastAPI прокси задач.

    Аргументы:
        config: Конфигурация (по умолчанию из окружения и .env)
        repository: Хранилище задач (по умолчанию Redis при REDIS_URL, иначе память)
        runner: Исполнитель задач

    Возвращает:
        FastAPI: Приложение
    """
    config = config or ConfigManager().get_config_sync()
    repository = repository or build_task_repository(config.redis_url, config.task_ttl)
    runner = runner or TaskRunner(repository, config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Прокси задач запущен: хранилище {type(repository).__name__}")
        yield
        await repository.close()
        logger.info("Прокси задач остановлен")

    app = FastAPI(
        title="MarkHub AI Task Proxy",
        description="Submit-and-poll proxy for AI tag and folder suggestions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.repository = repository
    app.state.runner = runner

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][-1]) for err in exc.errors()]
        logger.info(f"Некорректный запрос {request.url.path}: {fields}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": f"Некорректные параметры запроса: {', '.join(fields)}", "invalid_fields": fields},
        )

    @app.get("/health")
    async def health_check() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": "markhub-pipeline",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "storage": "memory" if isinstance(repository, InMemoryTaskRepository) else "redis",
        }

    async def _submit(kind: str, url: str, token: str) -> TaskAccepted:
        task_id = uuid.uuid4().hex
        await repository.create(RemoteTask(task_id=task_id, kind=kind, url=url, owner=hash_token(token)))
        return TaskAccepted(task_id=task_id, status="pending", status_url=f"{API_PREFIX}/tasks/{task_id}")

    @app.post(f"{API_PREFIX}/tags/generate-from-url", status_code=status.HTTP_202_ACCEPTED, response_model=TaskAccepted)
    async def generate_tags_from_url(
        body: GenerateTagsRequest,
        background_tasks: BackgroundTasks,
        token: str = Depends(require_api_key),
    ) -> TaskAccepted:
        ai_config = _validate_target(config, runner, body)
        accepted = await _submit("tags", body.url, token)
        background_tasks.add_task(runner.run_tags_task, accepted.task_id, body.url, body.filter_tags, ai_config)
        return accepted

    @app.post(f"{API_PREFIX}/folders/suggest-from-url", status_code=status.HTTP_202_ACCEPTED, response_model=TaskAccepted)
    async def suggest_folder_from_url(
        body: SuggestFolderRequest,
        background_tasks: BackgroundTasks,
        token: str = Depends(require_api_key),
    ) -> TaskAccepted:
        ai_config = _validate_target(config, runner, body)
        accepted = await _submit("folder", body.url, token)
        background_tasks.add_task(runner.run_folder_task, accepted.task_id, body.url, body.folders, ai_config)
        return accepted

    @app.get(f"{API_PREFIX}/tasks/{{task_id}}")
    async def get_task_status(task_id: str, token: str = Depends(require_api_key)) -> Dict[str, Any]:
        task = await repository.get(task_id)
        if task is None or task.owner != hash_token(token):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Задача не найдена или истекла")
        return task.public_view()

    return app
