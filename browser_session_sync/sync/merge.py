"""
Last-write-wins merge policy.

Compares the local cache against a full remote snapshot and produces a
MergePlan describing what the engine must do on each side. Planning is
pure: it reads copies and mutates nothing, so the engine can apply the
whole plan without an await in between.

Resolution rules for a record present on both sides:
- Remote modified_at strictly newer: overwrite local values
- Local modified_at strictly newer: keep local, push it with an update
- Same modified_at: push only if the content differs

A record whose current version the server already refused is held back
instead of being pushed or created again.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from ..protocol import RemoteSession, SessionRecord


class MergeAction(Enum):
    """Decision for a record present on both sides."""

    OVERWRITE_LOCAL = "overwrite_local"
    PUSH_LOCAL = "push_local"
    UNCHANGED = "unchanged"


@dataclass
class MergePlan:
    """Everything one merge pass has to apply.

    Attributes:
        inserts: Remote records new to this device
        overwrites: (local_id, remote) pairs where the remote side won
        pushes: Local records that won and need an update enqueued
        unchanged: local_ids already identical to the server
        removals: Local records whose remote_id vanished from the server
        creates: Local-only records with no pending create
        held_back: local_ids not pushed because the server refused this version
    """

    inserts: list[RemoteSession] = field(default_factory=list)
    overwrites: list[tuple[str, RemoteSession]] = field(default_factory=list)
    pushes: list[SessionRecord] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    removals: list[SessionRecord] = field(default_factory=list)
    creates: list[SessionRecord] = field(default_factory=list)
    held_back: list[str] = field(default_factory=list)


def resolve(local: SessionRecord, remote: RemoteSession) -> MergeAction:
    """Pick the winning side for a record held locally and remotely."""
    if remote.modified_at > local.modified_at:
        return MergeAction.OVERWRITE_LOCAL
    if local.modified_at > remote.modified_at:
        return MergeAction.PUSH_LOCAL
    if local.same_content(remote):
        return MergeAction.UNCHANGED
    return MergeAction.PUSH_LOCAL


def _dedupe(remote_sessions: Iterable[RemoteSession]) -> dict[str, RemoteSession]:
    by_id: dict[str, RemoteSession] = {}
    for remote in remote_sessions:
        current = by_id.get(remote.id)
        if current is None or remote.modified_at > current.modified_at:
            by_id[remote.id] = remote
    return by_id


def plan_merge(
    local_records: Iterable[SessionRecord],
    remote_sessions: Iterable[RemoteSession],
    *,
    pending_creates: set[str] | None = None,
    pending_deletes: set[str] | None = None,
    attached_during_fetch: set[str] | None = None,
) -> MergePlan:
    """Diff the local cache against the full remote set.

    Args:
        local_records: Current cache contents
        remote_sessions: Full remote set for the authenticated user
        pending_creates: local_ids with a create still queued
        pending_deletes: remote_ids with a delete still queued
        attached_during_fetch: local_ids whose create was acknowledged while
            the snapshot was being fetched; they may be missing from it and
            are not treated as deleted

    Returns:
        The plan for the engine to apply
    """
    pending_creates = pending_creates or set()
    pending_deletes = pending_deletes or set()
    attached_during_fetch = attached_during_fetch or set()
    remote_by_id = _dedupe(remote_sessions)
    plan = MergePlan()

    matched: set[str] = set()
    for local in local_records:
        if local.remote_id is None:
            if local.local_id in pending_creates:
                continue
            if local.is_held_back:
                plan.held_back.append(local.local_id)
            else:
                plan.creates.append(local)
            continue

        remote = remote_by_id.get(local.remote_id)
        if remote is None:
            if local.local_id not in attached_during_fetch:
                plan.removals.append(local)
            continue

        matched.add(remote.id)
        action = resolve(local, remote)
        if action is MergeAction.OVERWRITE_LOCAL:
            plan.overwrites.append((local.local_id, remote))
        elif action is MergeAction.UNCHANGED:
            plan.unchanged.append(local.local_id)
        elif local.is_held_back:
            plan.held_back.append(local.local_id)
        else:
            plan.pushes.append(local)

    for remote_id, remote in remote_by_id.items():
        if remote_id in matched or remote_id in pending_deletes:
            continue
        plan.inserts.append(remote)

    return plan
