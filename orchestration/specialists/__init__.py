"""
Bundled specialists and the registry they are looked up in.
"""
from .base import Specialist, SpecialistContext, SpecialistRegistry

__all__ = ["Specialist", "SpecialistContext", "SpecialistRegistry"]
