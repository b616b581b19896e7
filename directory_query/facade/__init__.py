from .directory_facade import DirectoryQueryFacade, QueryResult

__all__ = ["DirectoryQueryFacade", "QueryResult"]
