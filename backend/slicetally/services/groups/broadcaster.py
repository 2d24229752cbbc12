import logging

from slicetally.services.groups.store import GroupChange, GroupStore
from slicetally.services.groups.subscriptions import SubscriptionRegistry


class Broadcaster:
    """Pushes each accepted mutation's projection to the group's subscribers."""

    def __init__(self, store: GroupStore, registry: SubscriptionRegistry, logger=None):
        self.store = store
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)

    def attach(self) -> 'Broadcaster':
        self.store.add_listener(self.on_change)
        return self

    def on_change(self, change: GroupChange) -> int:
        delivered = self.registry.publish(change.code, change.projection)
        self.logger.debug(
            f"[broadcast] code={change.code} action={change.action} "
            f"version={change.projection.get('version')} delivered={delivered}"
        )
        return delivered
