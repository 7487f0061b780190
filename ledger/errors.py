"""
Ledger — エラー分類 (Error Taxonomy)

在庫不足・状態遷移違反は握りつぶさず、操作全体を中断する。
DuplicateRequestError だけは「成功」として扱い、前回の結果を返す。
"""


class LedgerError(Exception):
    """台帳操作の基底例外"""


class InsufficientInventoryError(LedgerError):
    """在庫 (capacity) 不足。部分的なコミットは発生しない。"""

    def __init__(self, unit_id: str, requested: int, available: int | None) -> None:
        self.unit_id = unit_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient inventory for unit {unit_id}: "
            f"requested={requested}, available={available}"
        )


class NotFoundError(LedgerError):
    def __init__(self, kind: str, ref: str) -> None:
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind} {ref} not found")


class InvalidStateError(LedgerError):
    """現在の状態からは許可されない操作"""

    def __init__(self, kind: str, ref: str, current: str, attempted: str) -> None:
        self.kind = kind
        self.ref = ref
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} {kind} {ref} in status {current}")


class DuplicateRequestError(LedgerError):
    """冪等性ガードによる短絡。エラーではなく前回結果付きの成功として扱う。"""

    def __init__(self, key: str, prior_result: dict | None) -> None:
        self.key = key
        self.prior_result = prior_result or {}
        super().__init__(f"Request {key} already processed")


class ExternalServiceError(LedgerError):
    """決済ゲートウェイ呼び出しの失敗 (リトライ上限到達後)"""

    def __init__(self, service: str, message: str, attempts: int) -> None:
        self.service = service
        self.attempts = attempts
        super().__init__(f"{service} failed after {attempts} attempt(s): {message}")
