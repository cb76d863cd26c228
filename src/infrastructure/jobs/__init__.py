from src.infrastructure.jobs.in_memory import InMemoryJobQueue

__all__ = ["InMemoryJobQueue"]
