# branchstock/db/__init__.py
"""
数据库层：
- base.py     ORM Base + init_models()
- session.py  异步 engine / session 工厂 + FastAPI 依赖
"""
