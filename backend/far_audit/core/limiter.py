"""Rate limiter singleton, imported by main and the LLM review route."""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
