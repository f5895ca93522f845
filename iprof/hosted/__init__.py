"""Hosted backend (Supabase) clients and object storage."""
