"""In-memory group registry, the single source of truth for counters.

Every read or write of a group's participants happens under that group's
lock. Listeners are notified only after the lock is released, with the
projection captured while it was held, so slow subscribers or disk writes
never stall other mutations.
"""

import logging
import threading
from typing import Callable, Dict, List, NamedTuple, Optional

from slicetally.errors import Conflict, InvalidInput, NotFound
from slicetally.models import (
    CODE_LENGTH,
    FOOD_TYPES,
    Group,
    Participant,
    clean_name,
    generate_group_code,
    generate_participant_id,
    normalize_code,
    normalize_name,
    utcnow,
)


class GroupChange(NamedTuple):
    code: str
    action: str
    projection: dict


class GroupStore:
    def __init__(self, code_length=CODE_LENGTH, name_max_length=30, audit_log_limit=1000,
                 default_food_type='pizza', logger=None):
        self.code_length = code_length
        self.name_max_length = name_max_length
        self.audit_log_limit = audit_log_limit
        self.default_food_type = default_food_type if default_food_type in FOOD_TYPES else 'pizza'
        self.logger = logger or logging.getLogger(__name__)
        self._groups: Dict[str, Group] = {}
        self._locks: Dict[str, threading.RLock] = {}
        # Guards the two maps above, and code generation plus insert
        self._registry_lock = threading.Lock()
        self._listeners: List[Callable[[GroupChange], None]] = []

    # ---- listeners ----

    def add_listener(self, listener: Callable[[GroupChange], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, change: GroupChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                self.logger.exception(f"[listener-error] code={change.code} action={change.action}")

    def _log_collision(self, code: str) -> None:
        # Handled here by drawing again; never reaches a caller
        exc = Conflict(f"code {code} already in use")
        self.logger.debug(f"[code-collision] {exc.message} status={exc.status_code}, rerolling")

    # ---- lookup helpers ----

    def _locked(self, code: str):
        """Return (group, lock) or raise NotFound."""
        code = normalize_code(code)
        with self._registry_lock:
            group = self._groups.get(code)
            lock = self._locks.get(code)
        if group is None:
            raise NotFound(f"group {code or '?'} not found")
        return group, lock

    def _clean_name(self, name) -> str:
        cleaned = clean_name(name, self.name_max_length)
        if not cleaned:
            raise InvalidInput('name is required')
        return cleaned

    def __contains__(self, code) -> bool:
        with self._registry_lock:
            return normalize_code(code) in self._groups

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._groups)

    def codes(self) -> List[str]:
        with self._registry_lock:
            return list(self._groups)

    # ---- operations ----

    def create_group(self, name=None, participant_id=None, food_type=None) -> str:
        """Create a group, optionally seeded with its first participant.

        ``name`` and ``participant_id`` go together: passing only one of them
        is rejected before anything is created.
        """
        has_name = name is not None and str(name).strip() != ''
        has_id = participant_id is not None and str(participant_id).strip() != ''
        if has_name != has_id:
            raise InvalidInput('name and participant_id are required together')
        seed_name = self._clean_name(name) if has_name else None
        if food_type not in FOOD_TYPES:
            food_type = self.default_food_type

        group = None
        with self._registry_lock:
            code = generate_group_code(
                lambda c: c in self._groups,
                length=self.code_length,
                on_collision=self._log_collision,
            )
            group = Group(code, food_type=food_type, audit_log_limit=self.audit_log_limit)
            if seed_name is not None:
                pid = str(participant_id).strip()
                group.participants[pid] = Participant(pid, seed_name, joined_at=group.created_at)
            group.version = 1
            lock = threading.RLock()
            self._groups[code] = group
            self._locks[code] = lock
        with lock:
            projection = group.projection()
        self.logger.info(f"[group-create] code={code} food_type={food_type} seeded={seed_name is not None}")
        self._notify(GroupChange(code, 'create', projection))
        return code

    def get_group(self, code) -> Group:
        group, lock = self._locked(code)
        with lock:
            return group.copy()

    def join_group(self, code, name, participant_id=None) -> Participant:
        cleaned = self._clean_name(name)
        pid = str(participant_id).strip() if participant_id is not None else ''
        group, lock = self._locked(code)
        with lock:
            now = utcnow()
            target = normalize_name(cleaned)
            participant = None
            by_id = group.participants.get(pid) if pid else None
            if by_id is not None and normalize_name(by_id.name) == target:
                participant = by_id
            else:
                participant = group.find_by_name(cleaned)

            if participant is not None:
                if participant.name != cleaned:
                    participant.name = cleaned
                participant.touch(now)
                action = 'rejoin'
            else:
                if not pid or pid in group.participants:
                    pid = generate_participant_id()
                    while pid in group.participants:
                        pid = generate_participant_id()
                participant = Participant(pid, cleaned, joined_at=now)
                group.participants[pid] = participant
                action = 'join'
            group.version += 1
            result = participant.copy()
            projection = group.projection()
        self.logger.info(f"[group-{action}] code={group.code} participant={result.id}")
        self._notify(GroupChange(group.code, 'join', projection))
        return result

    def adjust_slices(self, code, participant_id, delta) -> Participant:
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidInput('delta must be an integer')
        if delta == 0:
            raise InvalidInput('delta must be non-zero')
        group, lock = self._locked(code)
        with lock:
            participant = group.participants.get(participant_id)
            if participant is None:
                raise NotFound(f"participant {participant_id} not found")
            now = utcnow()
            # Over-decrement is absorbed by the floor, not reported
            participant.slices = max(0, participant.slices + delta)
            participant.touch(now)
            group.record(participant, delta, now)
            group.version += 1
            result = participant.copy()
            projection = group.projection()
        self._notify(GroupChange(group.code, 'adjust', projection))
        return result

    def remove_participant(self, code, participant_id) -> bool:
        try:
            group, lock = self._locked(code)
        except NotFound:
            return False
        with lock:
            if group.participants.pop(participant_id, None) is None:
                return False
            group.version += 1
            projection = group.projection()
        self.logger.info(f"[group-leave] code={group.code} participant={participant_id}")
        self._notify(GroupChange(group.code, 'leave', projection))
        return True

    def list_participants(self, code) -> List[dict]:
        group, lock = self._locked(code)
        with lock:
            return [p.to_summary() for p in group.ranked()]

    def list_participants_by_name(self, code) -> List[dict]:
        group, lock = self._locked(code)
        with lock:
            rows = [p.to_summary() for p in group.participants.values()]
        return sorted(rows, key=lambda r: normalize_name(r['name']))

    def projection(self, code) -> dict:
        group, lock = self._locked(code)
        with lock:
            return group.projection()

    # ---- persistence ----

    def to_dict(self) -> dict:
        with self._registry_lock:
            items = [(code, self._groups[code], self._locks[code]) for code in self._groups]
        groups = {}
        for code, group, lock in items:
            with lock:
                groups[code] = group.to_dict()
        return {'groups': groups}

    def restore(self, document: Optional[dict]) -> int:
        """Replace all state with the groups in ``document``. Returns the group count.

        Individual malformed groups are skipped and logged.
        """
        loaded: Dict[str, Group] = {}
        for code, data in ((document or {}).get('groups') or {}).items():
            try:
                data = dict(data)
                data.setdefault('code', code)
                group = Group.from_dict(data, audit_log_limit=self.audit_log_limit)
            except (KeyError, TypeError, ValueError) as exc:
                self.logger.warning(f"[restore-skip] code={code} error={exc}")
                continue
            if group.food_type not in FOOD_TYPES:
                group.food_type = self.default_food_type
            group.code = normalize_code(group.code)
            loaded[group.code] = group
        with self._registry_lock:
            self._groups = loaded
            self._locks = {code: threading.RLock() for code in loaded}
        return len(loaded)
