"""Utility modules for Pulse."""
from utils.logger import setup_logging
from utils.locks import KeyedLocks
from utils.http_client import HTTPClient, APIError
