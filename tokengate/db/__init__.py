"""Local persistent store: ORM models and session management."""
