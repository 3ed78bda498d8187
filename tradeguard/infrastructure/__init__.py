"""Infrastructure components: state storage."""

from .state_store import InMemoryStateStore, RedisStateStore, StateStore, create_state_store

__all__ = ['StateStore', 'InMemoryStateStore', 'RedisStateStore', 'create_state_store']
