"""
Data Source Providers
HTTP clients for external practice-management APIs
"""
from app.services.sync.providers.practicepanther import PracticePantherClient

__all__ = ["PracticePantherClient"]
