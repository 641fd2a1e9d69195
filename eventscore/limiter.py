"""
eventscore/limiter.py
Shared rate limiter; attached to the app in main.py and used by bulk routes.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
