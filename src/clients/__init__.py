"""External API clients: Supabase."""

from src.clients.supabase import SupabaseConversationStore
