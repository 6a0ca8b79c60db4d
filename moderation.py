"""
Moderation lifecycle for reviews and area suggestions.

Review state is two orthogonal parts:
  status      pending | approved | rejected
  deleted_at  NULL or a timestamp (soft delete)

Actions:
  approve   pending/rejected -> approved
  reject    pending/approved -> rejected
  delete    sets deleted_at (any status)
  restore   clears deleted_at
Re-applying an action to a record already in the target state is a no-op
success. transition() is pure and shared by the server-side bulk path and
the client-side ModerationConsole, so both agree on what a view contains.
"""

import copy
import logging
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import requests

import models
from errors import InvalidPayload, InvalidTransition, ServiceError, StorageUnavailable, Unauthorized
from selector import LatestRequestGate

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = ("approve", "reject", "delete", "restore")
SUGGESTION_ACTIONS = ("approve", "reject")

_STATUS_ACTIONS = {
    "approve": ("approved", ("pending", "rejected")),
    "reject": ("rejected", ("pending", "approved")),
}

ACTION_RESULT_STATUS = {
    "approve": "approved",
    "reject": "rejected",
    "delete": "deleted",
    "restore": "restored",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# State machine
# =============================================================================

def transition(record: Mapping, action: str, now: Optional[str] = None) -> Dict[str, Optional[str]]:
    """Column changes for applying action to record. {} means nothing to do.

    Raises InvalidTransition when the action is not allowed from the
    record's current status, InvalidPayload for an unknown action.
    """
    if action in _STATUS_ACTIONS:
        target, sources = _STATUS_ACTIONS[action]
        status = record.get("status")
        if status == target:
            return {}
        if status not in sources:
            raise InvalidTransition(f"Cannot {action} a {status} record.")
        return {"status": target}
    if action == "delete":
        return {} if record.get("deleted_at") else {"deleted_at": now or _now()}
    if action == "restore":
        return {"deleted_at": None} if record.get("deleted_at") else {}
    raise InvalidPayload({"action": f"Must be one of {', '.join(REVIEW_ACTIONS)}."})


def apply_transition(record: Mapping, action: str, now: Optional[str] = None) -> dict:
    updated = dict(record)
    updated.update(transition(record, action, now))
    return updated


def in_view(record: Mapping, view: str) -> bool:
    if view == "deleted":
        return bool(record.get("deleted_at"))
    return not record.get("deleted_at") and record.get("status") == view


def validate_view(view: Optional[str], allowed: Iterable[str] = models.REVIEW_VIEWS) -> str:
    view = (view or "pending").strip().lower()
    allowed = tuple(allowed)
    if view not in allowed:
        raise InvalidPayload({"view": f"Must be one of {', '.join(allowed)}."})
    return view


# =============================================================================
# Authorization
# =============================================================================

def bearer_token(headers: Mapping) -> str:
    auth = headers.get("Authorization", "") or ""
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    return (headers.get("X-Admin-Token", "") or "").strip()


def require_moderator(headers: Mapping, secret: Optional[str]) -> None:
    """Raise Unauthorized unless the request carries the moderator token.

    An unset server secret locks moderation entirely.
    """
    token = bearer_token(headers)
    if not secret or not token or not secrets.compare_digest(token.encode(), secret.encode()):
        raise Unauthorized()


# =============================================================================
# Bulk actions (server side)
# =============================================================================

@dataclass
class BulkResult:
    action: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def status(self) -> str:
        return ACTION_RESULT_STATUS[self.action]

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status": self.status,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


def _validate_batch(ids, action, allowed_actions) -> List[str]:
    errors = {}
    id_list = [i for i in ids if isinstance(i, str) and i.strip()] if isinstance(ids, list) else []
    if not id_list:
        errors["ids"] = "Provide at least one record id."
    if action not in allowed_actions:
        errors["action"] = f"Must be one of {', '.join(allowed_actions)}."
    if errors:
        raise InvalidPayload(errors, "Bad payload")
    return list(dict.fromkeys(i.strip() for i in id_list))


def moderate_reviews(ids, action: str, now: Optional[str] = None) -> BulkResult:
    """Apply action to each review independently.

    Each id is its own compare-and-set update, so a batch can partially
    succeed; the result names every id that failed and why.
    """
    id_list = _validate_batch(ids, action, REVIEW_ACTIONS)
    now = now or _now()
    result = BulkResult(action=action)

    for review_id in id_list:
        try:
            record = models.get_review(review_id)
            if record is None:
                result.failed[review_id] = "not_found"
                continue
            try:
                changes = transition(record, action, now)
            except InvalidTransition:
                result.failed[review_id] = "invalid_transition"
                continue
            if not changes or models.apply_review_changes(
                review_id, changes, record["status"], bool(record["deleted_at"])
            ):
                result.succeeded.append(review_id)
            else:
                result.failed[review_id] = "conflict"
        except sqlite3.Error:
            logger.exception("Moderation %s failed for review %s", action, review_id)
            result.failed[review_id] = "unavailable"

    logger.info(
        "Moderation %s: %d succeeded, %d failed %s",
        action, len(result.succeeded), len(result.failed), sorted(result.failed),
    )
    return result


def moderate_suggestions(ids, action: str,
                         on_places_changed: Optional[Callable[[dict], None]] = None) -> BulkResult:
    """Approve/reject area suggestions.

    Approval adds the estate to the estates table; rejecting an approved
    suggestion takes it out again. The status change and the estate row
    commit together. on_places_changed is called with the suggestion after
    either, so the caller can rebuild its place index.
    """
    id_list = _validate_batch(ids, action, SUGGESTION_ACTIONS)
    target = _STATUS_ACTIONS[action][0]
    result = BulkResult(action=action)

    for suggestion_id in id_list:
        try:
            record = models.get_suggestion(suggestion_id)
            if record is None:
                result.failed[suggestion_id] = "not_found"
                continue
            try:
                transition(record, action)
            except InvalidTransition:
                result.failed[suggestion_id] = "invalid_transition"
                continue
            if not models.set_suggestion_status(suggestion_id, target, record["status"]):
                result.failed[suggestion_id] = "conflict"
                continue
        except sqlite3.Error:
            logger.exception("Moderation %s failed for suggestion %s", action, suggestion_id)
            result.failed[suggestion_id] = "unavailable"
            continue

        result.succeeded.append(suggestion_id)
        if on_places_changed is not None and "approved" in (target, record["status"]):
            on_places_changed(record)

    return result


# =============================================================================
# Client side: optimistic console
# =============================================================================

class ModerationConsole:
    """A moderator's local view of one queue with optimistic updates.

    apply() changes the local list first, then confirms with the transport.
    On a transport error the list is restored from a deep-copied snapshot;
    on partial failure only the failed records are restored.

    The transport needs list_reviews(view) -> list and
    moderate(ids, action) -> {"ok", "succeeded", "failed"}.
    """

    def __init__(self, transport, view: str = "pending"):
        self.transport = transport
        self.view = validate_view(view)
        self.items: List[dict] = []
        self.error: Optional[str] = None
        self.last_result: Optional[dict] = None
        self._gate = LatestRequestGate()

    def load(self, view: Optional[str] = None) -> bool:
        """Fetch a view. Returns False if a newer load superseded this one."""
        view = validate_view(view or self.view)
        self.view = view
        ticket = self._gate.issue(view)
        try:
            items = self.transport.list_reviews(view)
        except ServiceError as e:
            if self._gate.is_current(ticket):
                self.error = e.message
            return False

        def _apply():
            self.items = list(items)
            self.error = None

        return self._gate.deliver(ticket, _apply)

    def apply(self, ids: Iterable[str], action: str) -> bool:
        ids = list(dict.fromkeys(ids))
        targets = set(ids)
        snapshot = copy.deepcopy(self.items)
        now = _now()

        optimistic = []
        for record in self.items:
            if record.get("id") not in targets:
                optimistic.append(record)
                continue
            try:
                updated = apply_transition(record, action, now)
            except InvalidTransition:
                updated = record
            if in_view(updated, self.view):
                optimistic.append(updated)
        self.items = optimistic

        try:
            result = self.transport.moderate(ids, action)
        except ServiceError as e:
            self.items = snapshot
            self.error = e.message
            self.last_result = None
            logger.warning("Moderation %s rolled back: %s", action, e.message)
            return False

        self.last_result = result
        failed = set((result or {}).get("failed") or {})
        if failed:
            self._restore(snapshot, failed)
            self.error = f"{len(failed)} of {len(ids)} records could not be updated."
            return False
        self.error = None
        return True

    def _restore(self, snapshot: List[dict], failed_ids: set) -> None:
        """Put failed records back as they were, keeping snapshot order."""
        current = {r.get("id"): r for r in self.items}
        restored = []
        for record in snapshot:
            rid = record.get("id")
            if rid in failed_ids:
                restored.append(record)
            elif rid in current:
                restored.append(current[rid])
        self.items = restored


class HttpModerationTransport:
    """Talks to /api/moderation with the moderator bearer token."""

    DEFAULT_TIMEOUT = 15  # seconds

    def __init__(self, base_url: str, token: str, timeout: Optional[int] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            resp = requests.request(
                method, f"{self.base_url}{path}",
                headers=self._headers(), timeout=self.timeout, **kwargs,
            )
        except requests.exceptions.RequestException as e:
            raise StorageUnavailable(f"Moderation API unreachable: {e}") from e
        if resp.status_code == 401:
            raise Unauthorized()
        if resp.status_code >= 400:
            try:
                message = resp.json().get("message") or resp.json().get("error")
            except ValueError:
                message = None
            raise ServiceError(message or f"Moderation API HTTP {resp.status_code}")
        return resp

    def list_reviews(self, view: str) -> List[dict]:
        resp = self._request("GET", "/api/moderation", params={"view": view})
        return resp.json().get("reviews", [])

    def moderate(self, ids: List[str], action: str) -> dict:
        resp = self._request("POST", "/api/moderation", json={"ids": ids, "action": action})
        return resp.json()

    def export_csv(self, view: str) -> str:
        resp = self._request("GET", "/api/export-reviews", params={"view": view})
        return resp.text
