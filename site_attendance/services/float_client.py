from __future__ import annotations

from datetime import date, datetime, timezone
import logging
import threading
from typing import Any, TypeVar
from urllib.parse import urljoin

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
import requests

from site_attendance.errors import ScheduleFeedUnavailableError
from site_attendance.settings import get_settings

logger = logging.getLogger("site_attendance.float_client")

MAX_PAGE_SIZE = 200

ModelT = TypeVar("ModelT", bound=BaseModel)


class FloatPerson(BaseModel):
    model_config = ConfigDict(extra="ignore")

    people_id: int | None = None
    name: str | None = None
    email: str | None = None


class FloatProject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_id: int | None = None
    name: str | None = None


class FloatTask(BaseModel):
    """A scheduled allocation; dates and times stay raw strings and are parsed by consumers."""

    model_config = ConfigDict(extra="ignore")

    task_id: int | None = None
    people_id: int | None = None
    people_ids: list[int] | None = None
    project_id: int | None = None
    start_date: str | None = None
    end_date: str | None = None
    start_time: str | None = None

    @field_validator("start_date", "end_date", "start_time", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def assignee_ids(self) -> list[int]:
        ordered: list[int] = []
        if self.people_id is not None:
            ordered.append(self.people_id)
        for person_id in self.people_ids or []:
            if person_id not in ordered:
                ordered.append(person_id)
        return ordered


class FloatApiClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        enabled: bool = True,
        user_agent: str | None = None,
        timeout_seconds: float = 20.0,
        page_size: int = MAX_PAGE_SIZE,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.api_key = (api_key or "").strip()
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds
        self.page_size = max(1, min(MAX_PAGE_SIZE, page_size))
        self.session = session or requests.Session()
        self._cancelled = threading.Event()
        self.session.headers.update({"Accept": "application/json"})
        if self.api_key:
            self.session.headers["Authorization"] = f"Bearer {self.api_key}"
        if user_agent:
            self.session.headers["User-Agent"] = user_agent

    @classmethod
    def from_settings(cls) -> FloatApiClient:
        settings = get_settings()
        return cls(
            api_key=settings.float_api_key,
            base_url=settings.float_base_url,
            enabled=settings.float_enabled,
            user_agent=settings.float_user_agent,
            timeout_seconds=settings.float_timeout_seconds,
            page_size=settings.float_page_size,
        )

    @property
    def is_configured(self) -> bool:
        return self.enabled and bool(self.api_key)

    def close(self) -> None:
        self.session.close()

    def cancel(self) -> None:
        """Stop pagination before the next page and drop pooled connections.

        Safe to call from another thread while a fetch is running.
        """
        self._cancelled.set()
        self.session.close()

    def get_people(self) -> list[FloatPerson]:
        if not self.is_configured:
            logger.warning("float_not_configured", extra={"resource": "people"})
            return []
        return self._get_all_pages("people", {}, FloatPerson)

    def get_projects(self) -> list[FloatProject]:
        if not self.is_configured:
            logger.warning("float_not_configured", extra={"resource": "projects"})
            return []
        return self._get_all_pages("projects", {}, FloatProject)

    def get_tasks_for_date(self, day: date) -> list[FloatTask]:
        return self.get_tasks_for_date_range(day, day)

    def get_tasks_for_date_range(self, start_date: date, end_date: date) -> list[FloatTask]:
        if not self.is_configured:
            logger.warning("float_not_configured", extra={"resource": "tasks"})
            return []
        params = {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        }
        return self._get_all_pages("tasks", params, FloatTask)

    def check_connection(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "enabled": self.enabled,
            "configured": self.is_configured,
            "connection_test": None,
        }
        if not self.is_configured:
            return status

        tested_at = datetime.now(timezone.utc)
        try:
            people = self.get_people()
            projects = self.get_projects()
        except ScheduleFeedUnavailableError as exc:
            logger.warning("float_connection_test_failed", extra={"error": exc.message})
            status["connection_test"] = {"success": False, "error": exc.message, "tested_at": tested_at}
            return status

        status["connection_test"] = {
            "success": True,
            "people_count": len(people),
            "projects_count": len(projects),
            "tested_at": tested_at,
        }
        return status

    def _get_page(self, endpoint: str, params: dict[str, Any]) -> list[Any]:
        url = urljoin(self.base_url, endpoint)
        try:
            response = self.session.get(url, params=params, timeout=self.timeout_seconds)
        except requests.Timeout as exc:
            raise ScheduleFeedUnavailableError(f"Float API timed out for {endpoint}") from exc
        except requests.RequestException as exc:
            raise ScheduleFeedUnavailableError(f"Float API request failed for {endpoint}: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "float_request_failed",
                extra={
                    "endpoint": endpoint,
                    "status_code": response.status_code,
                    "body": response.text[:500],
                },
            )
            raise ScheduleFeedUnavailableError(
                f"Float API answered {response.status_code} for {endpoint}",
                status_code=response.status_code,
            )

        try:
            payload = response.json() if response.content else []
        except ValueError as exc:
            raise ScheduleFeedUnavailableError(f"Float API returned invalid JSON for {endpoint}") from exc
        if not isinstance(payload, list):
            raise ScheduleFeedUnavailableError(f"Float API returned an unexpected payload for {endpoint}")
        return payload

    def _get_all_pages(self, endpoint: str, params: dict[str, Any], model: type[ModelT]) -> list[ModelT]:
        items: list[ModelT] = []
        page = 1
        while True:
            if self._cancelled.is_set():
                logger.info("float_fetch_cancelled", extra={"endpoint": endpoint, "page": page})
                raise ScheduleFeedUnavailableError(f"Float request cancelled for {endpoint}")
            raw_items = self._get_page(
                endpoint,
                {**params, "page": page, "per-page": self.page_size},
            )
            if not raw_items:
                break

            for raw_item in raw_items:
                try:
                    items.append(model.model_validate(raw_item))
                except ValidationError:
                    logger.warning(
                        "float_item_skipped",
                        extra={"endpoint": endpoint, "page": page},
                    )

            if len(raw_items) < self.page_size:
                break
            page += 1

        logger.info(
            "float_fetch_complete",
            extra={"endpoint": endpoint, "pages": page, "item_count": len(items)},
        )
        return items
