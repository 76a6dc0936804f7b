import asyncio
import base64
from decimal import Decimal

import pytest
from solders.pubkey import Pubkey

from conftest import FakeLedger, FakeProver, FakeRelay, FakeRelayer, FakeRPC, make_wallet
from services.api import config
from services.api.errors import (
    AmountTooLowAfterFees,
    InsufficientBalance,
    InvalidSignIn,
    ProofGenerationFailed,
    RemoteProtocolError,
    UnsupportedAsset,
)
from services.api.privacy_cash import PrivacyCashService, compute_withdraw_fee
from services.api.schemas_api import FeeConfig
from services.api.transaction import ExtData, deserialize_transaction, ext_data_hash
from services.crypto_core.field import FIELD_SIZE
from services.crypto_core.merkle import zero_path
from services.crypto_core.utxo import NATIVE_MINT, Utxo

USDC = config.TOKENS["usdc"]
RECIPIENT = str(Pubkey.from_bytes(bytes([6]) * 32))


def _notes(enc, amounts, mint=NATIVE_MINT):
    outputs = [enc.encrypt_utxo(Utxo(keypair=enc.keypair(), amount=a, mint=mint)).hex() for a in amounts]
    return FakeLedger(outputs, {ct: i for i, ct in enumerate(outputs)})


def _service(relayer=None, prover=None, rpc=None, **kw):
    kw.setdefault("confirm_max_retries", 3)
    kw.setdefault("confirm_delay_sec", 0)
    return PrivacyCashService(relayer or FakeRelayer(), rpc or FakeRPC(), prover or FakeProver(), **kw)


def test_compute_withdraw_fee():
    assert compute_withdraw_fee(400, Decimal("0.05"), 15) == 35
    assert compute_withdraw_fee(999, Decimal("0.0035"), 0) == 3
    assert compute_withdraw_fee(10, Decimal("0"), 7) == 7


# ===== deposits =====
def test_first_deposit(enc, public_key, signature_b64):
    relayer = FakeRelayer()
    prover = FakeProver()
    svc = _service(relayer, prover)
    res = asyncio.run(svc.prepare_deposit(public_key, signature_b64, 1_000_000_000))

    inputs = prover.calls[0]
    assert inputs["inAmount"] == ["0", "0"]
    assert inputs["outAmount"] == ["1000000000", "0"]
    assert inputs["publicAmount"] == "1000000000"
    assert inputs["root"] == relayer.tree.root
    assert inputs["inPathElements"] == [zero_path()[0], zero_path()[0]]
    assert relayer.tree.proof_calls == []

    meta = res.metadata
    ext = ExtData(
        recipient=config.FEE_RECIPIENT,
        ext_amount=1_000_000_000,
        encrypted_output1=bytes.fromhex(meta.encrypted_output1),
        encrypted_output2=bytes.fromhex(meta.encrypted_output2),
        fee=0,
        fee_recipient=config.FEE_RECIPIENT,
    )
    assert inputs["extDataHash"] == str(ext_data_hash(ext))

    note = enc.decrypt_utxo(meta.encrypted_output1)
    assert (note.amount, note.index) == (1_000_000_000, relayer.tree.next_index)
    assert enc.decrypt_utxo(meta.encrypted_output2).index == relayer.tree.next_index + 1

    tx = deserialize_transaction(res.unsigned_transaction)
    assert str(tx.message.account_keys[0]) == public_key
    assert len(tx.message.instructions) == 2


def test_deposit_with_fee_transfer(public_key, signature_b64):
    res = asyncio.run(_service().prepare_deposit(public_key, signature_b64, 10_000, deposit_fee=500))
    assert len(deserialize_transaction(res.unsigned_transaction).message.instructions) == 3


def test_deposit_consolidates_two_largest(enc, public_key, signature_b64):
    relayer = FakeRelayer(ledger=_notes(enc, [500, 300, 200]))
    prover = FakeProver()
    asyncio.run(_service(relayer, prover).prepare_deposit(public_key, signature_b64, 200))

    inputs = prover.calls[0]
    assert inputs["inAmount"] == ["500", "300"]
    assert inputs["outAmount"] == ["1000", "0"]
    assert inputs["publicAmount"] == "200"
    assert len(relayer.tree.proof_calls) == 2


def test_deposit_rejects_non_positive(public_key, signature_b64):
    with pytest.raises(ValueError):
        asyncio.run(_service().prepare_deposit(public_key, signature_b64, 0))


def test_spl_deposit(enc, public_key, signature_b64):
    relayer = FakeRelayer()
    prover = FakeProver()
    res = asyncio.run(_service(relayer, prover).prepare_spl_deposit(public_key, signature_b64, USDC.mint, "1.5"))

    assert res.metadata.base_units == 1_500_000
    assert res.metadata.amount == Decimal("1.5")
    assert relayer.tree.state_calls == ["usdc"]
    assert relayer.ledger.range_calls[0][2] == "usdc"
    assert prover.calls[0]["outAmount"] == ["1500000", "0"]
    assert enc.decrypt_utxo(res.metadata.encrypted_output1).mint == USDC.mint
    tx = deserialize_transaction(res.unsigned_transaction)
    assert len(tx.message.instructions) == 2


def test_spl_deposit_of_native_mint_is_a_sol_deposit(public_key, signature_b64):
    relayer = FakeRelayer()
    res = asyncio.run(_service(relayer).prepare_spl_deposit(public_key, signature_b64, NATIVE_MINT, "0.5"))
    assert res.metadata.base_units == 500_000_000
    assert relayer.tree.state_calls == [None]


def test_submit_deposit_confirms(public_key):
    relayer = FakeRelayer()
    res = asyncio.run(_service(relayer).submit_deposit("c2lnbmVk", public_key, "abcd"))
    assert (res.signature, res.success, res.confirmed) == ("deposit-sig", True, True)
    assert relayer.relay.deposits[0]["referrer"] == config.ADMIN_REFERRAL_WALLET
    assert relayer.relay.deposits[0]["mint_address"] is None
    assert relayer.ledger.exists_calls == [("abcd", None)]


def test_submit_deposit_keeps_polling_through_errors(public_key):
    relayer = FakeRelayer()
    relayer.ledger.exists_error = RemoteProtocolError("down", status=500)
    res = asyncio.run(_service(relayer, confirm_max_retries=4).submit_deposit(
        "c2lnbmVk", public_key, "abcd", referrer="ref", mint_address=USDC.mint,
    ))
    assert res.signature == "deposit-sig" and not res.confirmed
    assert len(relayer.ledger.exists_calls) == 4
    assert relayer.ledger.exists_calls[0] == ("abcd", "usdc")
    assert relayer.relay.deposits[0]["referrer"] == "ref"
    assert relayer.relay.deposits[0]["mint_address"] == USDC.mint


def test_unconfirmed_after_retries(public_key):
    relayer = FakeRelayer()
    relayer.ledger.exists_result = False
    res = asyncio.run(_service(relayer).submit_deposit("c2lnbmVk", public_key, "abcd"))
    assert not res.confirmed and len(relayer.ledger.exists_calls) == 3


# ===== withdrawals =====
def _withdraw_fees(**kw):
    args = dict(withdraw_fee_rate="0.05", withdraw_rent_fee="0", rent_fees={"sol": "0.000000014"})
    args.update(kw)
    return FeeConfig(**args)


def test_withdraw_takes_fee_from_payout(enc, public_key, signature_b64):
    relayer = FakeRelayer(ledger=_notes(enc, [600, 400]), relay=FakeRelay(_withdraw_fees()))
    prover = FakeProver()
    res = asyncio.run(_service(relayer, prover).prepare_withdraw(public_key, signature_b64, 435, RECIPIENT))

    meta = res.metadata
    assert (meta.amount, meta.fee, meta.change) == (400, 35, 565)
    inputs = prover.calls[0]
    assert inputs["inAmount"] == ["600", "400"]
    assert inputs["outAmount"] == ["565", "0"]
    assert inputs["publicAmount"] == str(FIELD_SIZE - 435)

    params = res.withdraw_params
    assert params.ext_amount == -400 and params.fee == 35
    assert params.recipient == RECIPIENT
    assert params.sender_address == public_key
    assert params.referral_wallet_address == config.ADMIN_REFERRAL_WALLET
    assert not params.is_spl
    change = enc.decrypt_utxo(base64.b64decode(params.encrypted_output1))
    assert (change.amount, change.index) == (565, relayer.tree.next_index)


def test_withdraw_whole_balance(enc, public_key, signature_b64):
    fees = _withdraw_fees(rent_fees={})
    relayer = FakeRelayer(ledger=_notes(enc, [1000]), relay=FakeRelay(fees))
    prover = FakeProver()
    res = asyncio.run(_service(relayer, prover).prepare_withdraw(public_key, signature_b64, 1000, RECIPIENT))

    assert (res.metadata.amount, res.metadata.fee, res.metadata.change) == (950, 50, 0)
    assert res.withdraw_params.ext_amount == -950
    assert prover.calls[0]["outAmount"] == ["0", "0"]
    assert prover.calls[0]["publicAmount"] == str(FIELD_SIZE - 1000)


def test_withdraw_fee_exceeds_amount(enc, public_key, signature_b64):
    fees = _withdraw_fees(withdraw_fee_rate="0", rent_fees={"sol": "0.000001"})
    relayer = FakeRelayer(ledger=_notes(enc, [5000]), relay=FakeRelay(fees))
    with pytest.raises(AmountTooLowAfterFees):
        asyncio.run(_service(relayer).prepare_withdraw(public_key, signature_b64, 500, RECIPIENT))


def test_withdraw_below_minimum(enc, public_key, signature_b64):
    fees = _withdraw_fees(minimum_withdrawal={"sol": "0.01"})
    relayer = FakeRelayer(ledger=_notes(enc, [600, 400]), relay=FakeRelay(fees))
    with pytest.raises(AmountTooLowAfterFees):
        asyncio.run(_service(relayer).prepare_withdraw(public_key, signature_b64, 400, RECIPIENT))


def test_withdraw_limited_to_two_largest_notes(enc, public_key, signature_b64):
    relayer = FakeRelayer(ledger=_notes(enc, [500, 300, 200]))
    prover = FakeProver()
    with pytest.raises(InsufficientBalance):
        asyncio.run(_service(relayer, prover).prepare_withdraw(public_key, signature_b64, 900, RECIPIENT))
    assert prover.calls == []


def test_withdraw_from_empty_balance(public_key, signature_b64):
    with pytest.raises(InsufficientBalance):
        asyncio.run(_service().prepare_withdraw(public_key, signature_b64, 1, RECIPIENT))


def test_spl_withdraw_params(enc, public_key, signature_b64):
    relayer = FakeRelayer(ledger=_notes(enc, [2_000_000], mint=USDC.mint))
    res = asyncio.run(_service(relayer).prepare_withdraw(
        public_key, signature_b64, 1_000_000, RECIPIENT, mint_address=USDC.mint,
    ))
    params = res.withdraw_params
    assert params.is_spl and params.mint_address == USDC.mint
    assert params.recipient_ata is not None
    assert res.metadata.change == 1_000_000
    assert relayer.ledger.range_calls[0][2] == "usdc"


def test_submit_withdraw_polls_with_hex(public_key):
    relayer = FakeRelayer()
    output = b"\x00\x01\xfe"
    params = dict(
        serializedProof="AA==", treeAccount="t", nullifier0PDA="a", nullifier1PDA="b",
        nullifier2PDA="c", nullifier3PDA="d", treeTokenAccount="tt", globalConfigAccount="g",
        recipient=RECIPIENT, feeRecipientAccount="f", extAmount=-5, encryptedOutput1=base64.b64encode(output).decode(),
        encryptedOutput2="AA==", fee=1, lookupTableAddress="alt", senderAddress=public_key,
    )
    res = asyncio.run(_service(relayer).submit_withdraw(params))
    assert res.signature == "withdraw-sig" and res.confirmed
    assert relayer.ledger.exists_calls[0] == ("0001fe", None)
    assert relayer.relay.withdrawals[0].ext_amount == -5


# ===== balances and failures =====
def test_empty_balance(public_key, signature_b64):
    res = asyncio.run(_service().get_balance(public_key, signature_b64))
    assert res.balance == 0 and res.base_units == 0 and res.utxo_count == 0
    assert res.token == "SOL" and res.decimals == 9


def test_balance_in_token_units(enc, public_key, signature_b64):
    relayer = FakeRelayer(ledger=_notes(enc, [1_250_000_000]))
    res = asyncio.run(_service(relayer).get_balance(public_key, signature_b64))
    assert res.balance == Decimal("1.25") and res.utxo_count == 1


def test_all_balances_skip_unavailable_tokens(public_key, signature_b64):
    relayer = FakeRelayer()
    relayer.ledger.fail_tokens = {"usdc"}
    balances = asyncio.run(_service(relayer).get_all_balances(public_key, signature_b64))
    names = [b.token for b in balances]
    assert "USDC" not in names
    assert len(names) == len(config.TOKENS) - 1


def test_foreign_signature_rejected(public_key):
    other = base64.b64encode(make_wallet(9)[2]).decode()
    with pytest.raises(InvalidSignIn):
        asyncio.run(_service().get_balance(public_key, other))
    with pytest.raises(InvalidSignIn):
        asyncio.run(_service().get_balance(public_key, "not base64!"))


def test_unknown_mint(public_key, signature_b64):
    with pytest.raises(UnsupportedAsset):
        asyncio.run(_service().prepare_withdraw(
            public_key, signature_b64, 10, RECIPIENT, mint_address=str(Pubkey.new_unique()),
        ))


def test_prover_failure_propagates(public_key, signature_b64):
    svc = _service(prover=FakeProver(fail=RuntimeError("witness generation failed")))
    with pytest.raises(ProofGenerationFailed):
        asyncio.run(svc.prepare_deposit(public_key, signature_b64, 1000))
