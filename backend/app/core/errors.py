"""課金同期エラー分類

サービス層はここで定義した型付きエラーのみを送出する。
stripe / SQLAlchemy の例外を呼び出し側へそのまま漏らさない。
"""
from typing import Optional


class BillingError(Exception):
    """課金処理エラーの基底クラス"""

    code = "billing_error"
    status_code = 500
    retryable = False
    default_message = "Billing operation failed"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ConfigurationError(BillingError):
    """設定不備 (price → plan 解決不能、APIキー未設定など)。運用者の修正が必要"""

    code = "configuration_error"
    status_code = 500
    default_message = "Billing is misconfigured"


class NotFoundError(BillingError):
    """ローカル行 / プロバイダ購読が存在しない"""

    code = "not_found"
    status_code = 404
    default_message = "Subscription not found"


class NoOpError(BillingError):
    """変更が発生しないリクエスト (Sync を促す)"""

    code = "no_op"
    status_code = 409
    default_message = "Request would not change the subscription"


class ProviderUnavailableError(BillingError):
    """ネットワーク障害・タイムアウト (リトライ可)"""

    code = "provider_unavailable"
    status_code = 503
    retryable = True
    default_message = "Billing provider is unavailable. Please try again."


class ProviderRejectedError(BillingError):
    """プロバイダがリクエストを拒否 (ユーザー操作なしでは再試行不可)"""

    code = "provider_rejected"
    status_code = 502
    default_message = "Billing provider rejected the request"


class PaymentDeclinedError(ProviderRejectedError):
    """カード拒否"""

    code = "payment_failed"
    status_code = 402
    default_message = "Payment failed. Please update your payment method."


class PersistenceError(BillingError):
    """プロバイダ更新成功後のローカル書き込み失敗 (Sync で修復)"""

    code = "persistence_error"
    status_code = 500
    default_message = "Subscription was updated at the provider but could not be saved. Run Sync to repair."
