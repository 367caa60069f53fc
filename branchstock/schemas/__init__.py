# branchstock/schemas/__init__.py
"""
Schemas package

本包保持“安静”：
- 不做聚合导出，避免隐式导入引发的循环依赖。
- 需要使用时请显式从具体模块导入，例如：
    from branchstock.schemas.batch import BatchOut
    from branchstock.schemas.transfer import TransferOut
"""

__all__: list[str] = []
