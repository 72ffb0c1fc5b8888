"""Backend de paiement d'un restaurant (FastAPI + Supabase)."""

__version__ = "0.1.0"
