"""
Модуль ai_client.py
Взаимодействует с OpenAI-совместимым API для рекомендации папок и тегов.

Клиент не хранит состояния между вызовами: каждый запрос создает собственный
AsyncOpenAI, строит промпт, разбирает и при необходимости восстанавливает
ответ модели. При невозможности разобрать ответ о папке применяется
резервная стратегия; ошибка разбора тегов возвращается вызывающему коду.
"""
import json
import math
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import openai
from openai import AsyncOpenAI
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .config import Config
from .errors import ConfigurationError, ParseError, TransportError, ValidationError
from .logger import get_logger, log_error_with_context, log_function_call, log_performance
from .models import BookmarkSnapshot, CandidateFolder, FolderRecommendation

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.5
MAX_TAGS = 10

FOLDER_SYSTEM_PROMPT = (
    "You are a professional bookmark management assistant. You recommend the most "
    "suitable existing folder for a web page based on its content."
)

FOLDER_PROMPT_TEMPLATE = """Recommend the most suitable folder for this bookmark.

Bookmark:
- Title: {title}
- URL: {url}
{extra}
Available folders:
{folders}

Rules:
1. Choose exactly one folder from the list above. Never invent a new folder.
2. Answer strictly as JSON without any other text:
{{"folderId": "<id from the list>", "folderName": "<name from the list>", "confidence": <number between 0 and 1>, "reason": "<short reason, at most 20 words>"}}
"""

FOLDER_NAME_SYSTEM_PROMPT = (
    'You are an assistant that picks a folder for a bookmark. Answer only with JSON '
    'in the form {"suggested_folder": "<folder name>"} where the name is copied '
    'exactly from the provided list.'
)

TAGS_SYSTEM_PROMPT = (
    'You are an assistant that suggests tags for bookmarks. Answer only with JSON '
    'in the form {"suggested_tags": ["tag1", "tag2"]}.'
)

_FENCE_RE = re.compile(r"^\s*```[\w-]*[ \t]*\n?(.*?)\n?[ \t]*```\s*$", re.DOTALL)


class FolderRecommendationResponse(BaseModel):
    """Ожидаемая форма ответа модели при рекомендации папки."""

    model_config = ConfigDict(extra="ignore")

    folder_id: Optional[Union[str, int]] = Field(default=None, validation_alias=AliasChoices("folderId", "folder_id"))
    folder_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("folderName", "folder_name", "suggested_folder"),
    )
    confidence: Optional[Any] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _require_folder(self) -> 'FolderRecommendationResponse':
        if self.folder_id is None and not self.folder_name:
            raise ValueError("ответ не содержит folderId или suggested_folder")
        return self


class FolderNameResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    suggested_folder: str = Field(
        validation_alias=AliasChoices("suggested_folder", "folder_name", "folderName")
    )


class TagsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tags: List[str] = Field(validation_alias=AliasChoices("suggested_tags", "tags"))


def strip_markdown_fence(text: str) -> str:
    """
    Убирает обертку Markdown-блока кода (```json ... ``` или ``` ... ```).

    Аргументы:
        text: Ответ модели

    Возвращает:
        str: Текст без обертки; текст без обертки возвращается обрезанным по краям
    """
    if text is None:
        return ""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def parse_json_content(content: str) -> Any:
    """
    Разбирает JSON из ответа модели.

    Сначала снимается обертка блока кода, затем выполняется разбор; если он
    не удался, разбирается первый блок от "{" до последней "}".

    Raises:
        ParseError: Если JSON не удалось получить
    """
    cleaned = strip_markdown_fence(content)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            pass

    raise ParseError("Ответ модели не является корректным JSON", raw_content=content)


def clamp_confidence(value: Any) -> float:
    """Приводит уверенность к диапазону [0, 1]; отсутствующее значение дает 0.5."""
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if math.isnan(number):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, number))


def normalize_tags(tags: Sequence[Any]) -> List[str]:
    """Убирает пустые и повторяющиеся (без учета регистра) теги, сохраняя порядок."""
    seen = set()
    result = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        cleaned = tag.strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result[:MAX_TAGS]


class FallbackRecommendationStrategy:
    """
    Эвристическая рекомендация папки, когда ответ модели нельзя использовать.

    Сначала ищется папка-«корзина» из списка generic_names (подстрока без
    учета регистра, по порядку списка) с уверенностью generic_confidence;
    иначе выбирается первая папка-кандидат с уверенностью default_confidence.
    """

    def __init__(
        self,
        generic_names: Sequence[str],
        generic_confidence: float = 0.3,
        default_confidence: float = 0.2,
    ):
        self.generic_names = list(generic_names)
        self.generic_confidence = generic_confidence
        self.default_confidence = default_confidence

    @classmethod
    def from_config(cls, config: Config) -> 'FallbackRecommendationStrategy':
        return cls(
            config.fallback_folder_names,
            config.fallback_confidence_generic,
            config.fallback_confidence_default,
        )

    def _find_generic(self, names: Sequence[str]) -> Optional[int]:
        for generic in self.generic_names:
            needle = generic.lower()
            for index, name in enumerate(names):
                if needle in name.lower():
                    return index
        return None

    def recommend(self, candidates: Sequence[CandidateFolder]) -> Optional[FolderRecommendation]:
        """
        Возвращает резервную рекомендацию или None для пустого списка кандидатов.

        Аргументы:
            candidates: Папки-кандидаты
        """
        if not candidates:
            return None

        index = self._find_generic([folder.name for folder in candidates])
        if index is not None:
            folder = candidates[index]
            logger.info(f"Резервная рекомендация: найдена общая папка '{folder.name}'")
            return FolderRecommendation(
                folder_id=folder.id,
                folder_name=folder.name,
                confidence=self.generic_confidence,
                reason="Резервная рекомендация: общая папка",
                is_fallback=True,
            )

        folder = candidates[0]
        logger.info(f"Резервная рекомендация: используется первая папка '{folder.name}'")
        return FolderRecommendation(
            folder_id=folder.id,
            folder_name=folder.name,
            confidence=self.default_confidence,
            reason="Резервная рекомендация: первая доступная папка",
            is_fallback=True,
        )

    def choose_name(self, names: Sequence[str]) -> Optional[str]:
        """Резервный выбор для списка названий папок."""
        if not names:
            return None
        index = self._find_generic(names)
        return names[index] if index is not None else names[0]


class AIServiceClient:
    """
    Клиент AI-сервиса для рекомендаций папок и тегов.

    Аргументы:
        config: Конфигурация с параметрами AI-сервиса
        fallback: Резервная стратегия (по умолчанию строится из конфигурации)
    """

    def __init__(self, config: Config, fallback: Optional[FallbackRecommendationStrategy] = None):
        self.config = config
        self.fallback = fallback or FallbackRecommendationStrategy.from_config(config)
        logger.debug(f"AIServiceClient инициализирован: model={config.model_name}, base_url={config.api_base_url}")

    def validate_config(self) -> None:
        """
        Проверяет параметры AI-сервиса до выполнения запроса.

        Raises:
            ConfigurationError: Если отсутствует ключ, адрес или модель, либо адрес некорректен
        """
        if not self.config.api_key:
            raise ConfigurationError("Не задан API-ключ AI-сервиса")
        if not self.config.api_base_url:
            raise ConfigurationError("Не задан адрес AI-сервиса")
        if not self.config.model_name:
            raise ConfigurationError("Не задано имя модели AI-сервиса")

        parsed = urlparse(self.config.api_base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Некорректный адрес AI-сервиса: {self.config.api_base_url}")

    def _create_client(self) -> AsyncOpenAI:
        kwargs: Dict[str, Any] = {
            "api_key": self.config.api_key,
            "base_url": self.config.api_base_url,
        }
        if self.config.llm_timeout:
            kwargs["timeout"] = self.config.llm_timeout
        return AsyncOpenAI(**kwargs)

    @staticmethod
    def _error_details(response: Any) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        """
        Выполняет запрос chat completion и возвращает текст ответа.

        Raises:
            TransportError: Ответ вне 2xx, сетевая ошибка или таймаут
            ParseError: Модель вернула пустой ответ
        """
        request: Dict[str, Any] = {
            "model": self.config.model_name,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        client = self._create_client()
        try:
            response = await client.chat.completions.create(**request)
        except openai.APITimeoutError as e:
            raise TransportError("Превышено время ожидания ответа AI-сервиса", timeout=True) from e
        except openai.APIStatusError as e:
            details = self._error_details(e.response)
            raise TransportError(
                f"Запрос к AI-сервису не выполнен: {e.status_code} - {details}",
                status_code=e.status_code,
                body=details,
            ) from e
        except openai.APIConnectionError as e:
            raise TransportError(f"Не удалось подключиться к AI-сервису: {e}") from e
        finally:
            await client.close()

        if not response.choices:
            raise ParseError("AI-сервис вернул ответ без вариантов")
        content = response.choices[0].message.content
        if not content:
            raise ParseError("AI-сервис вернул пустой ответ", raw_content=content)
        return content

    def build_folder_prompt(
        self,
        bookmark: BookmarkSnapshot,
        candidates: Sequence[CandidateFolder],
        page_content: Optional[str] = None,
    ) -> str:
        folders = "\n".join(
            f"- id: {folder.id}, name: {folder.name}"
            + (f", path: {folder.path}" if folder.path and folder.path != folder.name else "")
            for folder in candidates
        )
        extra = ""
        if bookmark.description:
            extra += f"- Description: {bookmark.description}\n"
        if page_content:
            extra += f"\nPage content:\n{page_content[:self.config.folder_content_limit]}\n"
        return FOLDER_PROMPT_TEMPLATE.format(
            title=bookmark.title, url=bookmark.url, extra=extra, folders=folders
        )

    def _match_candidate(
        self, parsed: FolderRecommendationResponse, candidates: Sequence[CandidateFolder]
    ) -> CandidateFolder:
        if parsed.folder_id is not None:
            for folder in candidates:
                if folder.id == str(parsed.folder_id):
                    return folder
        if parsed.folder_name:
            wanted = parsed.folder_name.strip().lower()
            for folder in candidates:
                if folder.name.strip().lower() == wanted:
                    return folder
        raise ParseError(
            f"Модель указала папку вне списка кандидатов: id={parsed.folder_id}, name={parsed.folder_name}"
        )

    def parse_folder_recommendation(
        self, content: str, candidates: Sequence[CandidateFolder]
    ) -> FolderRecommendation:
        """
        Разбирает ответ модели о папке и проверяет, что папка есть среди кандидатов.

        Raises:
            ParseError: Ответ не разобран, не прошел проверку схемы или указывает на чужую папку
        """
        data = parse_json_content(content)
        try:
            parsed = FolderRecommendationResponse.model_validate(data)
        except PydanticValidationError as e:
            raise ParseError(f"Ответ модели не соответствует схеме: {e.error_count()} ошибок", raw_content=content) from e

        folder = self._match_candidate(parsed, candidates)
        return FolderRecommendation(
            folder_id=folder.id,
            folder_name=folder.name,
            confidence=clamp_confidence(parsed.confidence),
            reason=parsed.reason or "",
        )

    async def get_folder_recommendation(
        self,
        bookmark: BookmarkSnapshot,
        candidate_folders: Sequence[CandidateFolder],
        page_content: Optional[str] = None,
    ) -> Optional[FolderRecommendation]:
        """
        Рекомендует папку для закладки из списка кандидатов.

        Аргументы:
            bookmark: Снимок закладки
            candidate_folders: Непустой список папок-кандидатов
            page_content: Текст страницы (необязательно)

        Возвращает:
            FolderRecommendation: Рекомендация модели или резервная рекомендация

        Raises:
            ValidationError: Пустой список кандидатов
            ConfigurationError: Не настроен AI-сервис
            TransportError: Ошибка запроса к AI-сервису
        """
        start_time = time.time()
        log_function_call("get_folder_recommendation", (bookmark.url,), {"candidates": len(candidate_folders)})

        if not candidate_folders:
            raise ValidationError("Список папок-кандидатов пуст")
        self.validate_config()

        prompt = self.build_folder_prompt(bookmark, candidate_folders, page_content)
        try:
            content = await self._chat(
                [
                    {"role": "system", "content": FOLDER_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.config.llm_temperature,
                max_tokens=self.config.llm_max_tokens,
            )
            recommendation = self.parse_folder_recommendation(content, candidate_folders)
        except ParseError as e:
            logger.warning(f"Не удалось разобрать рекомендацию папки для {bookmark.url}: {e}")
            recommendation = self.fallback.recommend(candidate_folders)

        log_performance(
            "get_folder_recommendation",
            time.time() - start_time,
            f"url={bookmark.url}, fallback={recommendation.is_fallback if recommendation else None}",
        )
        return recommendation

    async def suggest_folder_name(
        self,
        url: str,
        title: str,
        folders: Sequence[str],
        page_content: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Выбирает название папки из списка для страницы.

        Ответ, не совпадающий ни с одним названием из списка, заменяется
        резервным выбором; новое название никогда не возвращается.

        Возвращает:
            Tuple[str, str]: Название папки из списка и исходный ответ модели
        """
        log_function_call("suggest_folder_name", (url,), {"folders": len(folders)})

        if not folders:
            raise ValidationError("Список папок пуст")
        self.validate_config()

        prompt = f"Bookmark title: {title}\nURL: {url}\n"
        if page_content:
            prompt += f"\nPage content:\n{page_content[:self.config.folder_content_limit]}\n"
        prompt += (
            f"\nExisting folders: {json.dumps(list(folders), ensure_ascii=False)}\n"
            "You must choose exactly one folder from this list. Do not create new folder names."
        )

        content = ""
        try:
            content = await self._chat(
                [
                    {"role": "system", "content": FOLDER_NAME_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.2,
                max_tokens=50,
                json_mode=True,
            )
            parsed = FolderNameResponse.model_validate(parse_json_content(content))
            wanted = parsed.suggested_folder.strip().lower()
            for name in folders:
                if name.strip().lower() == wanted:
                    return name, content
            raise ParseError(f"Модель предложила папку вне списка: {parsed.suggested_folder}", raw_content=content)
        except (ParseError, PydanticValidationError) as e:
            logger.warning(f"Ответ модели о папке отклонен для {url}: {e}")
            return self.fallback.choose_name(folders), content

    async def generate_tags(
        self,
        title: str,
        url: str,
        existing_tags: Sequence[str] = (),
        page_content: Optional[str] = None,
    ) -> List[str]:
        """
        Генерирует теги для закладки.

        Аргументы:
            title: Заголовок закладки
            url: URL страницы
            existing_tags: Существующие теги пользователя (только контекст)
            page_content: Текст страницы (необязательно)

        Возвращает:
            List[str]: Упорядоченный список тегов без повторов

        Raises:
            ParseError: Ответ модели не удалось разобрать
        """
        start_time = time.time()
        log_function_call("generate_tags", (url,), {"existing_tags": len(existing_tags)})

        self.validate_config()

        prompt = f"Suggest 3-5 short tags for this bookmark.\n\nTitle: {title}\nURL: {url}\n"
        if page_content:
            prompt += f"\nPage content:\n{page_content[:self.config.tags_content_limit]}\n"
        if existing_tags:
            prompt += (
                f"\nThe user already uses these tags: {json.dumps(list(existing_tags), ensure_ascii=False)}. "
                "Prefer them when they fit."
            )

        content = await self._chat(
            [
                {"role": "system", "content": TAGS_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self.config.llm_temperature,
            max_tokens=self.config.llm_tags_max_tokens,
            json_mode=True,
        )

        try:
            parsed = TagsResponse.model_validate(parse_json_content(content))
        except PydanticValidationError as e:
            raise ParseError(f"Ответ модели с тегами не соответствует схеме: {e.error_count()} ошибок", raw_content=content) from e

        tags = normalize_tags(parsed.tags)
        log_performance("generate_tags", time.time() - start_time, f"url={url}, tags={len(tags)}")
        return tags

    async def check_connection(self) -> Dict[str, Any]:
        """
        Проверяет доступность AI-сервиса коротким запросом.

        Возвращает:
            Dict[str, Any]: {"success": True, "model": ...} или {"success": False, "error": ...}
        """
        try:
            self.validate_config()
            await self._chat(
                [{"role": "user", "content": 'Reply with {"status": "ok"}'}],
                temperature=0,
                max_tokens=10,
            )
        except (ConfigurationError, TransportError, ParseError) as e:
            log_error_with_context(e, {"operation": "check_connection", "base_url": self.config.api_base_url})
            return {"success": False, "error": str(e)}

        logger.info(f"Соединение с AI-сервисом подтверждено: {self.config.model_name}")
        return {"success": True, "model": self.config.model_name}
