# branchstock/api/__init__.py
"""
API package bootstrap.

- 这里不做任何重导出
- 聚合逻辑由 `branchstock/api/router.py` 管理
"""
