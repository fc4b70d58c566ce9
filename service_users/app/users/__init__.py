"""
User management: request/response models and the orchestration service.
"""

from .service import UserService

__all__ = ["UserService"]
