# branchstock/core/security.py
"""
门店经理授权码（manager code）哈希工具：

- passlib[pbkdf2_sha256]，库里只存哈希
- 强制调整类操作（直接改 remaining / real_time_stock）前必须校验
"""

from __future__ import annotations

from passlib.context import CryptContext

_pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_manager_code(code: str) -> str:
    return _pwd_context.hash(code)


def verify_manager_code_hash(plain_code: str, code_hash: str) -> bool:
    if not plain_code or not code_hash:
        return False
    try:
        return _pwd_context.verify(plain_code, code_hash)
    except ValueError:
        # 哈希格式无法识别：按校验失败处理
        return False
