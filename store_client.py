"""Remote reminder store client.

The reminder, action, preference and push-token tables live in a hosted
PostgREST-compatible backend. ReminderStore is the capability the sync core
depends on; RestReminderStore talks to the backend over HTTP with httpx.

Change notifications are delivered by polling a cheap fingerprint of each
watched table (row count + newest updated_at) and invoking the callback when
it moves.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

import httpx
from pydantic import BaseModel, ValidationError

from config import settings
from logger_config import setup_logger
from schemas import Reminder, ReminderAction, UserPreferences

logger = setup_logger(__name__, 'store.log')

ChangeCallback = Callable[[str], None]


class StoreError(Exception):
    """Raised when the remote store cannot be reached or rejects a request."""


class ChangeSubscription:
    """Handle for a running change watcher; cancel() stops it."""

    def __init__(self, table: str, task: asyncio.Task):
        self.table = table
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class ReminderStore(ABC):
    """Operations the sync core needs from the remote store (scoped to one user)."""

    @abstractmethod
    async def list_future_reminders(self, user_id: str, now: datetime) -> List[Reminder]:
        """Reminders not completed and scheduled at or after now."""

    @abstractmethod
    async def list_actions_for(self, reminder_ids: List[str]) -> List[ReminderAction]:
        """Actions for many reminders in one call."""

    @abstractmethod
    async def get_actions(self, reminder_id: str) -> List[ReminderAction]:
        """Actions for a single reminder."""

    @abstractmethod
    async def update_reminder(self, reminder_id: str, patch: Dict[str, Any]) -> Optional[Reminder]:
        """Apply a partial update and return the stored reminder."""

    @abstractmethod
    async def get_user_preferences(self, user_id: str) -> Optional[UserPreferences]:
        """The user's preference row, or None when none exists."""

    @abstractmethod
    async def upsert_push_token(self, row: Dict[str, Any]) -> None:
        """Insert or update a push token row keyed by (user_id, token)."""

    @abstractmethod
    async def delete_push_token(self, user_id: str, token: str) -> None:
        """Delete the push token row for (user_id, token)."""

    @abstractmethod
    def subscribe_to_changes(self, table: str, callback: ChangeCallback) -> ChangeSubscription:
        """Invoke callback(table) whenever rows of table change."""


def _jsonable(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize datetime values to ISO strings for the request body."""
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in patch.items()
    }


def _parse_rows(model: Type[BaseModel], rows: List[Dict[str, Any]], table: str) -> List[Any]:
    """Validate rows one by one; a malformed row is logged and skipped."""
    parsed = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as e:
            row_id = row.get('id') if isinstance(row, dict) else None
            logger.warning(f"Skipping malformed {table} row {row_id}: {e.error_count()} validation error(s)")
    return parsed


def _in_filter(values: Iterable[str]) -> str:
    quoted = ','.join(f'"{value}"' for value in values)
    return f"in.({quoted})"


class RestReminderStore(ReminderStore):
    """ReminderStore backed by the hosted REST endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.STORE_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.STORE_API_KEY
        self.access_token = access_token if access_token is not None else settings.STORE_ACCESS_TOKEN
        self.timeout = timeout if timeout is not None else settings.STORE_TIMEOUT
        self.poll_interval = poll_interval if poll_interval is not None else settings.CHANGE_POLL_INTERVAL
        self._transport = transport

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.api_key:
            headers['apikey'] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers['Authorization'] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> httpx.Response:
        url = f"{self.base_url}/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method, url, params=params, json=json, headers=self._headers(headers)
                )
                response.raise_for_status()
                return response
        except httpx.TimeoutException as e:
            raise StoreError(f"Timeout calling {method} {table}") from e
        except httpx.HTTPStatusError as e:
            raise StoreError(
                f"{method} {table} failed with status {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            raise StoreError(f"Network error calling {method} {table}: {str(e)}") from e

    async def list_future_reminders(self, user_id: str, now: datetime) -> List[Reminder]:
        params = {
            'select': '*',
            'user_id': f"eq.{user_id}",
            'scheduled_time': f"gte.{now.astimezone(timezone.utc).isoformat()}",
            'status': 'neq.completed',
            'order': 'scheduled_time.asc',
        }
        response = await self._request('GET', 'reminders', params=params)
        return _parse_rows(Reminder, response.json(), 'reminders')

    async def list_actions_for(self, reminder_ids: List[str]) -> List[ReminderAction]:
        if not reminder_ids:
            return []
        params = {
            'select': '*',
            'reminder_id': _in_filter(reminder_ids),
            'order': 'created_at.asc',
        }
        response = await self._request('GET', 'reminder_actions', params=params)
        return _parse_rows(ReminderAction, response.json(), 'reminder_actions')

    async def get_actions(self, reminder_id: str) -> List[ReminderAction]:
        return await self.list_actions_for([reminder_id])

    async def update_reminder(self, reminder_id: str, patch: Dict[str, Any]) -> Optional[Reminder]:
        response = await self._request(
            'PATCH',
            'reminders',
            params={'id': f"eq.{reminder_id}"},
            json=_jsonable(patch),
            headers={'Prefer': 'return=representation'}
        )
        rows = response.json()
        if not rows:
            raise StoreError(f"Reminder {reminder_id} not found")
        try:
            return Reminder.model_validate(rows[0])
        except ValidationError as e:
            raise StoreError(f"Malformed reminder {reminder_id} returned by update: {str(e)}") from e

    async def get_user_preferences(self, user_id: str) -> Optional[UserPreferences]:
        params = {'select': '*', 'user_id': f"eq.{user_id}", 'limit': '1'}
        response = await self._request('GET', 'user_preferences', params=params)
        rows = response.json()
        if not rows:
            return None
        try:
            return UserPreferences.model_validate(rows[0])
        except ValidationError as e:
            logger.warning(f"Ignoring malformed preferences for user {user_id}: {e.error_count()} validation error(s)")
            return None

    async def upsert_push_token(self, row: Dict[str, Any]) -> None:
        await self._request(
            'POST',
            'push_tokens',
            params={'on_conflict': 'user_id,token'},
            json=_jsonable(row),
            headers={'Prefer': 'resolution=merge-duplicates,return=minimal'}
        )

    async def delete_push_token(self, user_id: str, token: str) -> None:
        await self._request(
            'DELETE',
            'push_tokens',
            params={'user_id': f"eq.{user_id}", 'token': f"eq.{token}"},
            headers={'Prefer': 'return=minimal'}
        )

    async def table_fingerprint(self, table: str) -> Tuple[Optional[int], Optional[str]]:
        """Row count and newest updated_at of a table (visible rows only)."""
        response = await self._request(
            'GET',
            table,
            params={'select': 'updated_at', 'order': 'updated_at.desc.nullslast', 'limit': '1'},
            headers={'Prefer': 'count=exact'}
        )
        total = None
        content_range = response.headers.get('content-range', '')
        if '/' in content_range:
            count = content_range.rsplit('/', 1)[1]
            total = int(count) if count.isdigit() else None
        rows = response.json()
        latest = rows[0].get('updated_at') if rows else None
        return total, latest

    def subscribe_to_changes(self, table: str, callback: ChangeCallback) -> ChangeSubscription:
        task = asyncio.get_running_loop().create_task(self._watch(table, callback))
        logger.info(f"Watching '{table}' for changes every {self.poll_interval}s")
        return ChangeSubscription(table, task)

    async def _watch(self, table: str, callback: ChangeCallback) -> None:
        last = None
        while True:
            try:
                fingerprint = await self.table_fingerprint(table)
                if last is not None and fingerprint != last:
                    logger.info(f"Change detected in '{table}'")
                    callback(table)
                last = fingerprint
            except StoreError as e:
                logger.warning(f"Change poll for '{table}' failed: {str(e)}")
            except Exception as e:
                logger.error(f"Change callback for '{table}' failed: {str(e)}", exc_info=True)
            await asyncio.sleep(self.poll_interval)
