from bonuscard.backends.memory import MemoryAccountBackend

__all__ = ["MemoryAccountBackend"]
