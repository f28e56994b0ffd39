"""
Pydantic schemas for the Survey Relay service.

Contains all API request/response schemas and the storage-boundary value types.
"""

from .common import *
from .survey import *
