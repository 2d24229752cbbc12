"""Group domain services: state store, live fan-out and snapshots.

HTTP routes and socket handlers reach these through the ``GroupServices``
instance stored on the Flask app, keeping transport concerns separated from
the counter mechanics.
"""

from contextlib import nullcontext
import logging
import threading

from .broadcaster import Broadcaster
from .persistence import SnapshotWriter
from .store import GroupChange, GroupStore
from .subscriptions import (
    ChannelClosed,
    QueueChannel,
    SocketIOChannel,
    Subscription,
    SubscriptionRegistry,
)


class GroupServices:
    def __init__(self, store, registry, broadcaster, persistence, remove_on_disconnect=False, logger=None):
        self.store = store
        self.registry = registry
        self.broadcaster = broadcaster
        self.persistence = persistence
        self.remove_on_disconnect = remove_on_disconnect
        self.logger = logger or logging.getLogger(__name__)
        # Serializes attach against the check-then-remove in release
        self._presence_lock = threading.Lock()

    def _presence(self):
        return self._presence_lock if self.remove_on_disconnect else nullcontext()

    def attach(self, code, channel, participant_id=None, name=None) -> Subscription:
        """Optionally join by name, then subscribe ``channel`` to ``code``.

        Returns the live subscription; the channel's first delivery is the
        group's current projection.
        """
        with self._presence():
            if name is not None and str(name).strip():
                participant_id = self.store.join_group(code, name, participant_id).id
            return self.registry.subscribe(
                code,
                channel,
                initial=lambda: self.store.projection(code),
                participant_id=participant_id,
            )

    def release(self, sub: Subscription) -> None:
        """Deregister a closed stream and apply the presence policy."""
        self.registry.unsubscribe(sub)
        if not (self.remove_on_disconnect and sub.participant_id):
            return
        with self._presence():
            if self.registry.has_participant(sub.code, sub.participant_id):
                return
            removed = self.store.remove_participant(sub.code, sub.participant_id)
        if removed:
            self.logger.info(f"[presence-drop] code={sub.code} participant={sub.participant_id}")

    def shutdown(self) -> None:
        self.registry.close_all()
        self.persistence.flush()


def build_services(config, logger=None, start_task=None) -> GroupServices:
    """Wire store, registry, broadcaster and writer from a config mapping.

    Restores the last snapshot before any listener is attached, so startup
    does not schedule a pointless write.
    """
    logger = logger or logging.getLogger(__name__)
    store = GroupStore(
        code_length=int(config.get('CODE_LENGTH', 6)),
        name_max_length=int(config.get('NAME_MAX_LENGTH', 30)),
        audit_log_limit=int(config.get('AUDIT_LOG_LIMIT', 1000)),
        default_food_type=config.get('DEFAULT_FOOD_TYPE', 'pizza'),
        logger=logger,
    )
    registry = SubscriptionRegistry(logger=logger)
    persistence = SnapshotWriter(
        config.get('DATA_FILE') or '',
        store.to_dict,
        debounce_ms=int(config.get('PERSIST_DEBOUNCE_MS', 250)),
        start_task=start_task,
        logger=logger,
    )
    restored = store.restore(persistence.load_on_startup())
    if restored:
        logger.info(f"[persist-load] restored groups={restored}")
    broadcaster = Broadcaster(store, registry, logger=logger).attach()
    store.add_listener(persistence.on_change)
    return GroupServices(
        store,
        registry,
        broadcaster,
        persistence,
        remove_on_disconnect=bool(config.get('REMOVE_ON_DISCONNECT', False)),
        logger=logger,
    )


__all__ = [
    'Broadcaster',
    'ChannelClosed',
    'GroupChange',
    'GroupServices',
    'GroupStore',
    'QueueChannel',
    'SnapshotWriter',
    'SocketIOChannel',
    'Subscription',
    'SubscriptionRegistry',
    'build_services',
]
