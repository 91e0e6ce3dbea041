from pipewright.state.store import ConcurrentUpdateError, JsonStateStore, StateStoreError

__all__ = ["ConcurrentUpdateError", "JsonStateStore", "StateStoreError"]
