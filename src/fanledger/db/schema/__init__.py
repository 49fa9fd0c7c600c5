"""Schema migrations for the ledger store."""

from fanledger.db.schema.migrate import migrate, schema_version

__all__ = ["migrate", "schema_version"]
