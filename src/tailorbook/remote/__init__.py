from tailorbook.remote.supabase import SupabaseBackupClient

__all__ = ["SupabaseBackupClient"]
