from tailorbook.stores.json_file import JsonFileStore
from tailorbook.stores.memory import MemoryStore

__all__ = ["JsonFileStore", "MemoryStore"]
