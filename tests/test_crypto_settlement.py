"""
Crypto settlement tests
Wallet registry, withdrawal review lifecycle, Binance Pay deposits and the
admin approval queue.
"""

import json
import time

import pytest
from sqlalchemy import select

from models import (
    ApprovalStatus, CryptoPaymentIntent, CryptoPaymentStatus, CryptoTransaction, CryptoWallet,
    CryptoWithdrawalStatus, Transaction, TransactionStatus, TransactionType, UserType, WebhookEventLedger,
)
from services.binance_pay_service import sign_payload
from services.crypto_settlement_service import CryptoSettlementService, parse_binance_webhook
from services.wallet_service import WalletService
from utils.encryption import get_wallet_encryption
from utils.exceptions import (
    DuplicateWallet, InsufficientBalance, InvalidSignature, InvalidStateTransition, InvalidWalletAddress,
    NotAuthorized, NotFound, ValidationError, WithdrawalBlocked,
)

BINANCE_SECRET = "binance-test-secret"

ETH_ADDRESS = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
TRON_ADDRESS = "TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE"
BTC_ADDRESS = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"


def signed_headers(body: str, secret: str = BINANCE_SECRET):
    timestamp = str(int(time.time() * 1000))
    nonce = "abcdefghijklmnopqrstuvwxyz012345"
    return timestamp, nonce, sign_payload(secret, timestamp, nonce, body)


def deliver(service, db, payload: dict):
    body = json.dumps(payload)
    return service.handle_provider_webhook(db, body, *signed_headers(body))


def request_entry(db, withdrawal):
    return db.execute(
        select(Transaction).where(Transaction.reference_id == withdrawal.withdrawal_id)
    ).scalars().first()


class TestNetworks:

    def test_seed_is_idempotent(self, db, crypto_service):
        assert CryptoSettlementService.seed_default_networks(db) == 0
        names = [network.network for network in crypto_service.list_networks(db)]
        assert names == ["bitcoin", "ethereum", "bsc", "tron", "polygon"]

    def test_aliases_resolve(self, db, crypto_service):
        assert crypto_service.get_network(db, "TRC20").network == "tron"
        with pytest.raises(ValidationError):
            crypto_service.get_network(db, "solana")


class TestWalletRegistry:
    """add_user_wallet / list_user_wallets"""

    def test_add_wallet_encrypts_and_verifies(self, db, crypto_service, researcher):
        wallet = crypto_service.add_user_wallet(db, researcher.id, "external", ETH_ADDRESS, "ERC20")

        assert wallet.network == "ethereum"
        assert wallet.is_verified is True
        assert wallet.verification_status == "verified"
        assert wallet.wallet_address != ETH_ADDRESS
        assert get_wallet_encryption().decrypt(wallet.wallet_address) == ETH_ADDRESS

    def test_listing_is_masked(self, db, crypto_service, researcher):
        crypto_service.add_user_wallet(db, researcher.id, "external", TRON_ADDRESS, "tron")

        listed = crypto_service.list_user_wallets(db, researcher.id)

        assert len(listed) == 1
        assert listed[0]["wallet_address"] == TRON_ADDRESS[:6] + "..." + TRON_ADDRESS[-4:]
        assert TRON_ADDRESS not in json.dumps(listed)

    def test_address_is_unique_platform_wide(self, db, crypto_service, researcher, make_user):
        """Checksum casing does not make an EVM address new"""
        crypto_service.add_user_wallet(db, researcher.id, "external", ETH_ADDRESS, "ethereum")
        other = make_user(UserType.RESEARCHER)

        with pytest.raises(DuplicateWallet):
            crypto_service.add_user_wallet(db, other.id, "external", ETH_ADDRESS.lower(), "bsc")
        assert len(db.execute(select(CryptoWallet)).scalars().all()) == 1

    def test_rejects_malformed_address(self, db, crypto_service, researcher):
        with pytest.raises(InvalidWalletAddress):
            crypto_service.add_user_wallet(db, researcher.id, "external", "0x1234", "ethereum")
        with pytest.raises(InvalidWalletAddress):
            crypto_service.add_user_wallet(db, researcher.id, "external", ETH_ADDRESS, "bitcoin")

    def test_requires_network(self, db, crypto_service, researcher):
        with pytest.raises(ValidationError):
            crypto_service.add_user_wallet(db, researcher.id, "external", BTC_ADDRESS, "  ")


class TestWithdrawalRequests:
    """create_crypto_withdrawal validation and fraud limits"""

    def test_request_records_pending_without_debit(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 100000)

        withdrawal = crypto_service.create_crypto_withdrawal(db, researcher.id, 10000, TRON_ADDRESS, "tron")

        assert withdrawal.status == CryptoWithdrawalStatus.PENDING.value
        assert withdrawal.network_fee == 50
        assert withdrawal.currency == "USDT"
        assert get_wallet_encryption().decrypt(withdrawal.wallet_address) == TRON_ADDRESS
        assert WalletService.get_wallet(db, researcher.id).balance == 100000

        entry = request_entry(db, withdrawal)
        assert entry.amount == -10000
        assert entry.status == TransactionStatus.PENDING_APPROVAL.value
        assert entry.transaction_type == TransactionType.CRYPTO_WITHDRAWAL_REQUEST.value

    def test_network_minimum_and_maximum(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 2000000)
        with pytest.raises(ValidationError):
            crypto_service.create_crypto_withdrawal(db, researcher.id, 1999, ETH_ADDRESS, "ethereum")
        with pytest.raises(ValidationError):
            crypto_service.create_crypto_withdrawal(db, researcher.id, 1000001, ETH_ADDRESS, "ethereum")

    def test_insufficient_balance(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 999)
        with pytest.raises(InsufficientBalance):
            crypto_service.create_crypto_withdrawal(db, researcher.id, 1000, TRON_ADDRESS, "tron")

    def test_address_must_match_network(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 10000)
        with pytest.raises(InvalidWalletAddress):
            crypto_service.create_crypto_withdrawal(db, researcher.id, 1000, ETH_ADDRESS, "tron")

    def test_large_single_withdrawal_is_blocked(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 1000000)
        with pytest.raises(WithdrawalBlocked) as exc_info:
            crypto_service.create_crypto_withdrawal(db, researcher.id, 600000, TRON_ADDRESS, "tron")
        assert str(exc_info.value) == "Withdrawal blocked: Large withdrawal amount requires manual review"

    def test_review_threshold_is_exclusive(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 2000000)
        with pytest.raises(WithdrawalBlocked):
            crypto_service.create_crypto_withdrawal(db, researcher.id, 500100, TRON_ADDRESS, "tron")

        at_threshold = crypto_service.create_crypto_withdrawal(db, researcher.id, 500000, TRON_ADDRESS, "tron")
        assert at_threshold.status == CryptoWithdrawalStatus.PENDING.value
        assert at_threshold.amount == 500000

    def test_only_stablecoin_withdrawals(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 100000)
        with pytest.raises(ValidationError):
            crypto_service.create_crypto_withdrawal(db, researcher.id, 10000, BTC_ADDRESS, "bitcoin", currency="BTC")
        assert crypto_service.list_withdrawals(db, user_id=researcher.id) == []

        usdc = crypto_service.create_crypto_withdrawal(db, researcher.id, 10000, ETH_ADDRESS, "ethereum", currency="USDC")
        assert usdc.currency == "USDC"

    def test_daily_cap(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 1000000)
        crypto_service.create_crypto_withdrawal(db, researcher.id, 450000, TRON_ADDRESS, "tron")
        crypto_service.create_crypto_withdrawal(db, researcher.id, 450000, TRON_ADDRESS, "tron")

        with pytest.raises(WithdrawalBlocked) as exc_info:
            crypto_service.create_crypto_withdrawal(db, researcher.id, 200000, TRON_ADDRESS, "tron")
        assert "Daily withdrawal limit exceeded" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_frequency_ignores_cancelled_requests(self, db, crypto_service, researcher, fund_wallet):
        """Five live requests a day; a cancelled one frees its slot"""
        fund_wallet(researcher.id, 100000)
        requests = [
            crypto_service.create_crypto_withdrawal(db, researcher.id, 1000, TRON_ADDRESS, "tron")
            for _ in range(5)
        ]

        with pytest.raises(WithdrawalBlocked):
            crypto_service.create_crypto_withdrawal(db, researcher.id, 1000, TRON_ADDRESS, "tron")

        await crypto_service.update_withdrawal_status(
            db, requests[0].id, CryptoWithdrawalStatus.CANCELLED.value, actor_id=researcher.id
        )
        sixth = crypto_service.create_crypto_withdrawal(db, researcher.id, 1000, TRON_ADDRESS, "tron")
        assert sixth.status == CryptoWithdrawalStatus.PENDING.value


class TestWithdrawalReview:
    """update_withdrawal_status ledger effects"""

    @pytest.fixture
    def pending(self, db, crypto_service, researcher, fund_wallet):
        fund_wallet(researcher.id, 100000)
        return crypto_service.create_crypto_withdrawal(db, researcher.id, 10000, TRON_ADDRESS, "tron")

    @pytest.mark.asyncio
    async def test_approve_debits_and_complete_records_chain_tx(
        self, db, crypto_service, researcher, admin, pending, mock_notifier
    ):
        approved = await crypto_service.update_withdrawal_status(
            db, pending.id, CryptoWithdrawalStatus.APPROVED.value, admin_id=admin.id, notes="KYC ok"
        )
        assert approved.status == CryptoWithdrawalStatus.APPROVED.value
        assert approved.reviewed_by == admin.id
        assert WalletService.get_wallet(db, researcher.id).balance == 90000

        entry = request_entry(db, pending)
        db.refresh(entry)
        assert entry.status == TransactionStatus.COMPLETED.value
        assert entry.transaction_type == TransactionType.CRYPTO_WITHDRAWAL_APPROVED.value
        mock_notifier.send_withdrawal_status.assert_not_awaited()

        with pytest.raises(ValidationError):
            await crypto_service.update_withdrawal_status(
                db, pending.id, CryptoWithdrawalStatus.COMPLETED.value, admin_id=admin.id
            )

        completed = await crypto_service.update_withdrawal_status(
            db, pending.id, CryptoWithdrawalStatus.COMPLETED.value, admin_id=admin.id, transaction_hash="0xabc123"
        )
        assert completed.status == CryptoWithdrawalStatus.COMPLETED.value
        assert completed.completed_at is not None
        chain_tx = db.execute(select(CryptoTransaction)).scalars().one()
        assert chain_tx.transaction_hash == "0xabc123"
        assert chain_tx.transaction_type == "withdrawal_out"
        assert crypto_service.list_crypto_transactions(db, researcher.id) == [chain_tx]
        assert crypto_service.list_crypto_transactions(db, admin.id) == []
        mock_notifier.send_withdrawal_status.assert_awaited_once_with(
            researcher.id, pending.withdrawal_id, "completed", None
        )

    @pytest.mark.asyncio
    async def test_failure_after_approval_returns_funds(self, db, crypto_service, researcher, admin, pending):
        await crypto_service.update_withdrawal_status(db, pending.id, "approved", admin_id=admin.id)
        await crypto_service.update_withdrawal_status(db, pending.id, "processing", admin_id=admin.id)
        await crypto_service.update_withdrawal_status(db, pending.id, "failed", admin_id=admin.id, notes="Node rejected tx")

        assert WalletService.get_wallet(db, researcher.id).balance == 100000
        reversal = WalletService.find_by_idempotency_key(db, f"crypto_withdrawal_reversal:{pending.withdrawal_id}")
        assert reversal.amount == 10000
        assert reversal.transaction_type == TransactionType.CRYPTO_WITHDRAWAL_REVERSAL.value

    @pytest.mark.asyncio
    async def test_reject_leaves_balance_untouched(self, db, crypto_service, researcher, admin, pending, mock_notifier):
        rejected = await crypto_service.update_withdrawal_status(
            db, pending.id, "rejected", admin_id=admin.id, notes="Address flagged"
        )
        assert rejected.admin_notes == "Address flagged"
        assert WalletService.get_wallet(db, researcher.id).balance == 100000

        entry = request_entry(db, pending)
        db.refresh(entry)
        assert entry.status == TransactionStatus.CANCELLED.value
        mock_notifier.send_withdrawal_status.assert_awaited_once()

        with pytest.raises(InvalidStateTransition):
            await crypto_service.update_withdrawal_status(db, pending.id, "approved", admin_id=admin.id)

    @pytest.mark.asyncio
    async def test_approval_fails_when_funds_were_spent(self, db, crypto_service, researcher, admin, pending, fund_wallet):
        fund_wallet(researcher.id, 5000)

        with pytest.raises(InsufficientBalance):
            await crypto_service.update_withdrawal_status(db, pending.id, "approved", admin_id=admin.id)

        db.refresh(pending)
        assert pending.status == CryptoWithdrawalStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_only_owner_cancels_and_only_admin_reviews(self, db, crypto_service, researcher, make_user, pending):
        other = make_user(UserType.RESEARCHER)
        with pytest.raises(NotAuthorized):
            await crypto_service.update_withdrawal_status(db, pending.id, "cancelled", actor_id=other.id)
        with pytest.raises(NotAuthorized):
            await crypto_service.update_withdrawal_status(db, pending.id, "approved", actor_id=researcher.id)

        cancelled = await crypto_service.update_withdrawal_status(db, pending.id, "cancelled", actor_id=researcher.id)
        assert cancelled.status == CryptoWithdrawalStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_unknown_status_and_withdrawal(self, db, crypto_service, admin, pending):
        with pytest.raises(ValidationError):
            await crypto_service.update_withdrawal_status(db, pending.id, "teleported", admin_id=admin.id)
        with pytest.raises(NotFound):
            await crypto_service.update_withdrawal_status(db, 9999, "approved", admin_id=admin.id)

    def test_list_withdrawals_filters(self, db, crypto_service, researcher, pending):
        assert [w.id for w in crypto_service.list_withdrawals(db, user_id=researcher.id)] == [pending.id]
        assert crypto_service.list_withdrawals(db, status="completed") == []


class TestBinancePayDeposits:
    """Hosted checkout, signed callbacks and admin approval"""

    @pytest.mark.asyncio
    async def test_create_order_persists_pending_intent(self, db, crypto_service, company, mock_binance):
        result = await crypto_service.create_provider_order(db, company.id, 25000, "USDT")

        intent = result["payment_intent"]
        assert intent.status == CryptoPaymentStatus.PENDING.value
        assert intent.merchant_order_id.startswith(f"BountyVault_{company.id}_")
        assert intent.provider_order_id == "29383937493038367292"
        assert intent.checkout_data["checkout_url"] == "https://pay.binance.com/checkout/abc"
        assert result["checkout"]["qrcodeLink"].endswith("abc.jpg")

        args = mock_binance.create_order.call_args.args
        assert args[:3] == (intent.merchant_order_id, 25000, "USDT")

    @pytest.mark.asyncio
    async def test_fiat_currency_is_rejected(self, db, crypto_service, company, mock_binance):
        with pytest.raises(ValidationError):
            await crypto_service.create_provider_order(db, company.id, 25000, "USD")
        mock_binance.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_volatile_coin_is_rejected(self, db, crypto_service, company, mock_binance):
        # A BTC amount cannot be credited 1:1 to a USD wallet
        with pytest.raises(ValidationError):
            await crypto_service.create_provider_order(db, company.id, 100, currency="BTC")
        mock_binance.create_order.assert_not_awaited()
        assert db.execute(select(CryptoPaymentIntent)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_usdc_order_is_accepted(self, db, crypto_service, company, mock_binance):
        intent = (await crypto_service.create_provider_order(db, company.id, 25000, "USDC"))["payment_intent"]
        assert intent.currency == "USDC"
        assert mock_binance.create_order.call_args.args[2] == "USDC"

    @pytest.mark.asyncio
    async def test_legacy_volatile_approval_is_not_credited(self, db, crypto_service, company, admin):
        intent = (await crypto_service.create_provider_order(db, company.id, 100))["payment_intent"]
        result = deliver(crypto_service, db, {
            "merchantOrderId": intent.merchant_order_id, "status": "SUCCESS", "transactionId": "BN-TX-BTC",
        })
        approval = crypto_service.list_payment_approvals(db)[0]
        approval.currency = "BTC"
        db.commit()

        with pytest.raises(ValidationError):
            await crypto_service.approve_crypto_payment(db, result["approval_id"], admin.id)
        assert WalletService.get_wallet(db, company.id).balance == 0

    @pytest.mark.asyncio
    async def test_success_queues_approval_then_admin_credits(
        self, db, crypto_service, company, admin, mock_notifier
    ):
        intent = (await crypto_service.create_provider_order(db, company.id, 25000))["payment_intent"]

        result = deliver(crypto_service, db, {
            "merchantOrderId": intent.merchant_order_id, "status": "SUCCESS", "transactionId": "BN-TX-1",
        })

        assert result["status"] == "completed"
        assert WalletService.get_wallet(db, company.id).balance == 0
        db.refresh(intent)
        assert intent.status == CryptoPaymentStatus.COMPLETED.value
        assert intent.transaction_id == "BN-TX-1"

        pending = crypto_service.list_payment_approvals(db, status=ApprovalStatus.PENDING.value)
        assert [approval.id for approval in pending] == [result["approval_id"]]

        approval = await crypto_service.approve_crypto_payment(db, result["approval_id"], admin.id, "Matched memo")
        assert approval.status == ApprovalStatus.APPROVED.value
        assert approval.admin_id == admin.id
        assert WalletService.get_wallet(db, company.id).balance == 25000
        mock_notifier.send_crypto_payment_status.assert_awaited_once()

        # Repeat approval is a no-op; rejecting an approved deposit is refused
        await crypto_service.approve_crypto_payment(db, result["approval_id"], admin.id)
        assert WalletService.get_wallet(db, company.id).balance == 25000
        with pytest.raises(InvalidStateTransition):
            await crypto_service.reject_crypto_payment(db, result["approval_id"], admin.id)

    @pytest.mark.asyncio
    async def test_rejected_deposit_is_never_credited(self, db, crypto_service, company, admin):
        intent = (await crypto_service.create_provider_order(db, company.id, 25000))["payment_intent"]
        result = deliver(crypto_service, db, {
            "merchantOrderId": intent.merchant_order_id, "status": "SUCCESS", "transactionId": "BN-TX-2",
        })

        rejected = await crypto_service.reject_crypto_payment(db, result["approval_id"], admin.id, "Memo mismatch")
        assert rejected.status == ApprovalStatus.REJECTED.value
        assert WalletService.get_wallet(db, company.id).balance == 0

        with pytest.raises(InvalidStateTransition):
            await crypto_service.approve_crypto_payment(db, result["approval_id"], admin.id)

    @pytest.mark.asyncio
    async def test_redelivery_and_repeat_success(self, db, crypto_service, company):
        intent = (await crypto_service.create_provider_order(db, company.id, 25000))["payment_intent"]
        payload = {"merchantOrderId": intent.merchant_order_id, "status": "SUCCESS", "transactionId": "BN-TX-3"}

        deliver(crypto_service, db, payload)
        assert deliver(crypto_service, db, payload) == {"status": "duplicate", "previous_status": "completed"}

        # Same order, different provider event id
        payload["transactionId"] = "BN-TX-3b"
        assert deliver(crypto_service, db, payload)["status"] == "already_completed"
        assert len(crypto_service.list_payment_approvals(db)) == 1

    @pytest.mark.asyncio
    async def test_native_envelope_and_closed_order(self, db, crypto_service, company):
        intent = (await crypto_service.create_provider_order(db, company.id, 25000))["payment_intent"]

        result = deliver(crypto_service, db, {
            "bizType": "PAY",
            "bizId": 29383937493038367292,
            "bizIdStr": "29383937493038367292",
            "bizStatus": "PAY_CLOSED",
            "data": json.dumps({"merchantTradeNo": intent.merchant_order_id, "totalFee": 250.0}),
        })

        assert result == {"status": "failed", "merchant_order_id": intent.merchant_order_id, "reason": "EXPIRED"}
        db.refresh(intent)
        assert intent.status == CryptoPaymentStatus.FAILED.value

    def test_unknown_order_is_recorded_as_failed_event(self, db, crypto_service):
        with pytest.raises(NotFound):
            deliver(crypto_service, db, {"merchantOrderId": "BountyVault_9_1", "status": "SUCCESS", "transactionId": "X1"})

        ledger = db.execute(select(WebhookEventLedger)).scalars().one()
        assert ledger.status == "failed"
        assert ledger.event_provider == "binance_pay"

    def test_bad_signature(self, db, crypto_service):
        body = json.dumps({"merchantOrderId": "BountyVault_1_1", "status": "SUCCESS"})
        timestamp, nonce, _ = signed_headers(body)
        forged = sign_payload("not-the-secret", timestamp, nonce, body)

        with pytest.raises(InvalidSignature):
            crypto_service.handle_provider_webhook(db, body, timestamp, nonce, forged)
        assert db.execute(select(CryptoPaymentIntent)).first() is None

    def test_statistics(self, db, crypto_service):
        stats = crypto_service.get_crypto_statistics(db)
        assert stats == {
            "total_crypto_payments": 0,
            "total_crypto_withdrawals": 0,
            "pending_withdrawals": 0,
            "total_volume": 0,
        }


class TestWebhookParsing:

    def test_merchant_callback_shape(self):
        event = parse_binance_webhook({"merchantOrderId": "BountyVault_1_2", "status": "FAILED"})
        assert event["event_id"] == "BountyVault_1_2:FAILED"
        assert event["transaction_id"] is None

    def test_native_shape_maps_status(self):
        event = parse_binance_webhook({
            "bizId": 42,
            "bizStatus": "PAY_SUCCESS",
            "data": json.dumps({"merchantTradeNo": "BountyVault_1_3", "transactionId": "T-9"}),
        })
        assert event == {
            "event_id": "42",
            "merchant_order_id": "BountyVault_1_3",
            "status": "SUCCESS",
            "transaction_id": "T-9",
        }

    def test_native_shape_with_bad_data(self):
        with pytest.raises(ValidationError):
            parse_binance_webhook({"bizId": 1, "bizStatus": "PAY_SUCCESS", "data": "{not json"})
