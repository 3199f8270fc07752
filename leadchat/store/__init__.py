"""Lead store abstractions and implementations."""

from .base import LeadFilter, LeadStore
from .memory import MemoryLeadStore
from .supabase import SupabaseLeadStore

__all__ = ["LeadFilter", "LeadStore", "MemoryLeadStore", "SupabaseLeadStore"]
