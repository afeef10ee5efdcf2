"""modqueue Database — SQLAlchemy base, session scopes and queue tables."""
