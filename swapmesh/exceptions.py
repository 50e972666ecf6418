"""에러 분류 - 검증/서명/네트워크/가스 대납 서비스 예외"""

from __future__ import annotations


class SwapMeshError(Exception):
    """swapmesh 공통 예외"""


class ValidationError(SwapMeshError):
    """주문/메시지 구조 오류"""


class SignatureError(SwapMeshError):
    """서명 불일치 또는 서명 실패"""


class SignatureRejectedError(SignatureError):
    """사용자가 서명 요청을 거절함 (UI에서 경고 없이 처리)"""


class NetworkError(SwapMeshError):
    """가십/협상/RPC 전송 실패 (재시도 가능)"""


class SponsorshipServiceError(SwapMeshError):
    """가스 대납 릴레이 서비스 실패. 자동 재시도하지 않는다."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (HTTP {self.status})"


class NotFoundError(SwapMeshError):
    """주문 또는 거래 없음"""


class ExpiredError(SwapMeshError):
    """만료된 주문"""
