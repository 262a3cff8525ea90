from .block_watcher import BlockWatcher

__all__ = ['BlockWatcher']
