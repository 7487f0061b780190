"""
Reservation Ledger — 在庫・利用権・紛争の台帳サービス

販売単位の capacity を注文・サブスクリプション・プロモーション枠に
引き当て、キャンセル・期限切れ・返金・紛争の結果に応じて 1 回だけ解放する。
"""
