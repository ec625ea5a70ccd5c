from .keyword_store import KeywordStore, SQLiteKeywordStore

__all__ = ["KeywordStore", "SQLiteKeywordStore"]
