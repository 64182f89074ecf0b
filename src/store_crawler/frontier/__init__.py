"""Shared request queue."""
from .request_queue import RequestQueue

__all__ = ['RequestQueue']
