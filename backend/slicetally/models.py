import secrets
import uuid
from collections import deque
from datetime import datetime, timezone

# No 0/O or 1/I so codes survive being read aloud or typed from a screen
CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
CODE_LENGTH = 6
FOOD_TYPES = ('pizza', 'japones', 'hamburger', 'pastel', 'churrasco')


def utcnow():
    return datetime.now(timezone.utc)


def _parse_ts(value):
    if isinstance(value, datetime):
        return value
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def normalize_name(value):
    return (value or '').strip().lower()


def clean_name(value, max_length=30):
    """Trim and cap a display name. Returns '' for blank input."""
    if value is None:
        return ''
    return str(value).strip()[:max_length].strip()


def normalize_code(value):
    return (value or '').strip().upper()


def generate_group_code(exists, length=CODE_LENGTH, alphabet=CODE_ALPHABET, on_collision=None):
    """Generate a short group code that ``exists`` does not already know.

    Each character is drawn uniformly from ``alphabet``. Collisions are
    re-rolled; callers that need the check and the insert to be atomic must
    hold their own lock around this call.
    """
    while True:
        code = ''.join(secrets.choice(alphabet) for _ in range(length))
        if not exists(code):
            return code
        if on_collision is not None:
            on_collision(code)


def generate_participant_id():
    return f"id-{uuid.uuid4().hex[:8]}"


class Participant:
    __slots__ = ('id', 'name', 'slices', 'joined_at', 'updated_at')

    def __init__(self, id, name, slices=0, joined_at=None, updated_at=None):
        now = utcnow()
        self.id = id
        self.name = name
        self.slices = max(0, int(slices or 0))
        self.joined_at = joined_at or now
        self.updated_at = updated_at or self.joined_at

    def touch(self, now=None):
        # Never move backwards, even if the wall clock does
        now = now or utcnow()
        if now > self.updated_at:
            self.updated_at = now

    def to_summary(self):
        return {'id': self.id, 'name': self.name, 'slices': self.slices}

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slices': self.slices,
            'joined_at': self.joined_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data['id']),
            name=data.get('name') or '',
            slices=data.get('slices', 0),
            joined_at=_parse_ts(data['joined_at']) if data.get('joined_at') else None,
            updated_at=_parse_ts(data['updated_at']) if data.get('updated_at') else None,
        )

    def copy(self):
        return Participant(self.id, self.name, self.slices, self.joined_at, self.updated_at)

    def __repr__(self):
        return f"<Participant {self.id} {self.name!r} slices={self.slices}>"


class Group:
    def __init__(self, code, food_type='pizza', created_at=None, audit_log_limit=1000):
        self.code = code
        self.food_type = food_type
        self.created_at = created_at or utcnow()
        self.participants = {}
        self.audit_log = deque(maxlen=audit_log_limit)
        self.version = 0

    def find_by_name(self, name):
        """First participant in join order whose name matches, ignoring case."""
        target = normalize_name(name)
        if not target:
            return None
        for participant in self.participants.values():
            if normalize_name(participant.name) == target:
                return participant
        return None

    def record(self, participant, delta, at):
        self.audit_log.append({
            'at': at.isoformat(),
            'participant_id': participant.id,
            'delta': delta,
            'slices': participant.slices,
        })

    def ranked(self):
        # sorted() is stable, so dict insertion (join) order breaks exact ties
        return sorted(
            self.participants.values(),
            key=lambda p: (-p.slices, p.joined_at),
        )

    def meta(self):
        return {'food_type': self.food_type, 'created_at': self.created_at.isoformat()}

    def projection(self):
        return {
            'code': self.code,
            'version': self.version,
            'participants': [p.to_summary() for p in self.ranked()],
            'meta': self.meta(),
        }

    def to_dict(self):
        return {
            'code': self.code,
            'food_type': self.food_type,
            'created_at': self.created_at.isoformat(),
            'version': self.version,
            'participants': {pid: p.to_dict() for pid, p in self.participants.items()},
            'audit_log': list(self.audit_log),
        }

    @classmethod
    def from_dict(cls, data, audit_log_limit=1000):
        group = cls(
            code=data['code'],
            food_type=data.get('food_type') or 'pizza',
            created_at=_parse_ts(data['created_at']) if data.get('created_at') else None,
            audit_log_limit=audit_log_limit,
        )
        group.version = int(data.get('version') or 0)
        for pid, pdata in (data.get('participants') or {}).items():
            pdata = dict(pdata)
            pdata.setdefault('id', pid)
            participant = Participant.from_dict(pdata)
            group.participants[participant.id] = participant
        group.audit_log.extend(data.get('audit_log') or [])
        return group

    def copy(self):
        clone = Group(self.code, self.food_type, self.created_at, self.audit_log.maxlen)
        clone.version = self.version
        clone.participants = {pid: p.copy() for pid, p in self.participants.items()}
        clone.audit_log.extend(dict(e) for e in self.audit_log)
        return clone

    def __repr__(self):
        return f"<Group {self.code} participants={len(self.participants)}>"
