"""Identity connector paging engine.

Plans traversals over nested, filter-scoped and multi-account upstream
collections (GitHub, ServiceNow, AWS IAM, Google Workspace), drives their
pagination, and returns pages of normalized objects with an opaque,
resumable cursor.
"""
