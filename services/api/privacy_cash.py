# services/api/privacy_cash.py
"""
Use-case layer: prepare/submit deposits and withdrawals, read balances.

The caller supplies its wallet address and a signature over the sign-in
message; every key is re-derived from that signature per call and dropped
afterwards. Deposits come back as unsigned transactions for the client to
sign; withdrawals come back as a parameter set the relayer executes.
"""
from __future__ import annotations

import asyncio
import base64
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional, Sequence, Tuple

from services.api import config
from services.api.config import TokenConfig
from services.api.errors import (
    AmountTooLowAfterFees,
    InsufficientBalance,
    InvalidSignIn,
    PrivacyCashError,
)
from services.api.logging_config import get_logger
from services.api.prover import ProofPipeline, Prover, SnarkjsProver
from services.api.relayer import RelayerClients
from services.api.schemas_api import (
    BalanceRes,
    DepositMetadata,
    PrepareDepositRes,
    PrepareWithdrawRes,
    SubmitRes,
    TreeState,
    WithdrawMetadata,
    WithdrawParams,
)
from services.api.solana_rpc import SolanaRPC
from services.api.transaction import (
    ExtData,
    associated_token_address,
    build_unsigned_transaction,
    build_withdraw_params,
    deposit_fee_instruction,
    deposit_instruction,
    ext_data_hash,
    serialize_transaction,
    spl_deposit_instruction,
)
from services.api.utxo_scanner import UtxoScanner
from services.crypto_core.encryption import EncryptionService
from services.crypto_core.keys import decode_signature, verify_sign_in
from services.crypto_core.merkle import zero_path
from services.crypto_core.proof import ProofData, build_circuit_inputs
from services.crypto_core.selection import select_inputs
from services.crypto_core.utxo import Utxo, mint_address_field, total_amount

logger = get_logger("privacy_cash")


def compute_withdraw_fee(amount: int, fee_rate: Decimal, rent_units: int) -> int:
    """floor(amount * rate) + fixed rent, all in base units."""
    proportional = (Decimal(amount) * Decimal(fee_rate)).to_integral_value(rounding=ROUND_FLOOR)
    return int(proportional) + int(rent_units)


class PrivacyCashService:
    def __init__(
        self,
        relayer: Optional[RelayerClients] = None,
        rpc: Optional[SolanaRPC] = None,
        prover: Optional[Prover] = None,
        *,
        verify_sign_in: bool = config.VERIFY_SIGN_IN,
        confirm_max_retries: int = config.CONFIRM_MAX_RETRIES,
        confirm_delay_sec: float = config.CONFIRM_DELAY_SEC,
        group_size: int = config.FETCH_UTXOS_GROUP_SIZE,
    ):
        self.relayer = relayer or RelayerClients()
        self.rpc = rpc or SolanaRPC()
        self.pipeline = ProofPipeline(prover or SnarkjsProver())
        self.scanner = UtxoScanner(self.relayer.ledger, self.rpc, group_size=group_size)
        self.verify_sign_in = verify_sign_in
        self.confirm_max_retries = confirm_max_retries
        self.confirm_delay_sec = confirm_delay_sec

    # ===== shared steps =====
    def _session(self, public_key: str, signature_b64: str) -> EncryptionService:
        try:
            signature = decode_signature(signature_b64)
        except ValueError as e:
            raise InvalidSignIn(str(e)) from e
        if self.verify_sign_in and not verify_sign_in(public_key, signature):
            raise InvalidSignIn(f"signature does not verify for {public_key}")
        return EncryptionService.from_signature(signature)

    async def _input_paths(self, inputs: Sequence[Utxo], token: Optional[str]) -> List[List[str]]:
        paths: List[List[str]] = []
        for utxo in inputs:
            if utxo.amount == 0:
                paths.append(zero_path()[0])
            else:
                proof = await self.relayer.tree.fetch_merkle_proof(utxo.commitment(), token)
                paths.append(proof.path_elements)
        return paths

    async def _transact(
        self,
        enc: EncryptionService,
        *,
        token: TokenConfig,
        tree: TreeState,
        inputs: Sequence[Utxo],
        output_amount: int,
        ext_amount: int,
        fee: int,
        recipient: str,
        fee_recipient: str,
    ) -> Tuple[ProofData, ExtData]:
        """ComputeOutputs -> BuildProofInputs -> Prove for the 2-in/2-out circuit."""
        keypair = enc.keypair("v2")
        mint = token.utxo_mint
        outputs = [
            Utxo(keypair=keypair, amount=output_amount, index=tree.next_index, mint=mint),
            Utxo(keypair=keypair, amount=0, index=tree.next_index + 1, mint=mint),
        ]
        paths = await self._input_paths(inputs, token.tree_token)

        ext = ExtData(
            recipient=recipient,
            ext_amount=ext_amount,
            encrypted_output1=enc.encrypt_utxo(outputs[0]),
            encrypted_output2=enc.encrypt_utxo(outputs[1]),
            fee=fee,
            fee_recipient=fee_recipient,
            mint=mint,
        )
        circuit_inputs = build_circuit_inputs(
            root=tree.root,
            inputs=inputs,
            outputs=outputs,
            path_elements=paths,
            ext_amount=ext_amount,
            fee=fee,
            ext_data_hash=ext_data_hash(ext),
            mint_field=mint_address_field(mint),
        )
        logger.info(f"generating proof token={token.symbol} extAmount={ext_amount} fee={fee}")
        proof = await self.pipeline.prove(circuit_inputs)
        return proof, ext

    async def _poll_confirmation(self, encrypted_output_hex: str, token: Optional[str]) -> bool:
        for attempt in range(1, self.confirm_max_retries + 1):
            await asyncio.sleep(self.confirm_delay_sec)
            try:
                if await self.relayer.ledger.exists(encrypted_output_hex, token):
                    logger.debug(f"output confirmed after {attempt} checks")
                    return True
            except PrivacyCashError as e:
                logger.warning(f"confirmation check {attempt} failed: {e}")
        logger.warning("transaction may not be confirmed yet")
        return False

    # ===== deposits =====
    async def prepare_deposit(
        self,
        public_key: str,
        signature: str,
        lamports: int,
        deposit_fee: int = 0,
    ) -> PrepareDepositRes:
        if lamports <= 0:
            raise ValueError("deposit amount must be positive")
        enc = self._session(public_key, signature)
        token = config.SOL

        tree = await self.relayer.tree.query_tree_state()
        existing = await self.scanner.get_utxos(enc)
        inputs = select_inputs(existing, enc.keypair("v2"), token.utxo_mint)

        proof, ext = await self._transact(
            enc,
            token=token,
            tree=tree,
            inputs=inputs,
            output_amount=total_amount(inputs) + lamports,
            ext_amount=lamports,
            fee=0,
            recipient=config.FEE_RECIPIENT,
            fee_recipient=config.FEE_RECIPIENT,
        )

        instructions = [deposit_instruction(public_key, proof, ext)]
        if deposit_fee > 0:
            instructions.append(deposit_fee_instruction(public_key, deposit_fee))
        tx = await self._assemble(public_key, instructions)
        return PrepareDepositRes(
            unsigned_transaction=serialize_transaction(tx),
            metadata=DepositMetadata(
                amount=lamports,
                base_units=lamports,
                encrypted_output1=ext.encrypted_output1.hex(),
                encrypted_output2=ext.encrypted_output2.hex(),
            ),
        )

    async def prepare_spl_deposit(
        self,
        public_key: str,
        signature: str,
        mint_address: str,
        amount: Decimal | int | str,
    ) -> PrepareDepositRes:
        token = config.get_token_by_mint(mint_address)
        base_units = token.to_base_units(amount)
        if token.is_native:
            return await self.prepare_deposit(public_key, signature, base_units)
        if base_units <= 0:
            raise ValueError("deposit amount must be positive")
        enc = self._session(public_key, signature)

        tree = await self.relayer.tree.query_tree_state(token.tree_token)
        existing = await self.scanner.get_utxos(enc, token.tree_token)
        inputs = select_inputs(existing, enc.keypair("v2"), token.utxo_mint)

        proof, ext = await self._transact(
            enc,
            token=token,
            tree=tree,
            inputs=inputs,
            output_amount=total_amount(inputs) + base_units,
            ext_amount=base_units,
            fee=0,
            recipient=str(associated_token_address(config.FEE_RECIPIENT, token.mint)),
            fee_recipient=str(associated_token_address(config.FEE_RECIPIENT, token.mint)),
        )

        tx = await self._assemble(public_key, [spl_deposit_instruction(public_key, token.mint, proof, ext)])
        return PrepareDepositRes(
            unsigned_transaction=serialize_transaction(tx),
            metadata=DepositMetadata(
                amount=Decimal(str(amount)),
                base_units=base_units,
                encrypted_output1=ext.encrypted_output1.hex(),
                encrypted_output2=ext.encrypted_output2.hex(),
            ),
        )

    async def _assemble(self, public_key: str, instructions):
        alt, blockhash = await asyncio.gather(self.rpc.get_address_lookup_table(), self.rpc.get_latest_blockhash())
        return build_unsigned_transaction(public_key, instructions, alt, blockhash)

    async def submit_deposit(
        self,
        signed_transaction: str,
        sender_address: str,
        encrypted_output1: str,
        referrer: Optional[str] = None,
        mint_address: Optional[str] = None,
    ) -> SubmitRes:
        token = config.get_token_by_mint(mint_address) if mint_address else config.SOL
        spl_mint = None if token.is_native else token.mint
        result = await self.relayer.relay.relay_deposit(
            signed_transaction,
            sender_address,
            referrer=referrer or config.ADMIN_REFERRAL_WALLET,
            mint_address=spl_mint,
        )
        confirmed = await self._poll_confirmation(encrypted_output1, token.tree_token)
        return SubmitRes(signature=result.signature, success=result.success, confirmed=confirmed)

    # ===== balances =====
    async def _balance(self, enc: EncryptionService, token: TokenConfig) -> BalanceRes:
        units, utxos = await self.scanner.get_balance(enc, token.tree_token)
        return BalanceRes(
            balance=token.from_base_units(units),
            base_units=units,
            token=token.name,
            decimals=token.decimals,
            utxo_count=len(utxos),
        )

    async def get_balance(self, public_key: str, signature: str, mint_address: Optional[str] = None) -> BalanceRes:
        token = config.get_token_by_mint(mint_address) if mint_address else config.SOL
        enc = self._session(public_key, signature)
        return await self._balance(enc, token)

    async def get_all_balances(self, public_key: str, signature: str) -> List[BalanceRes]:
        enc = self._session(public_key, signature)
        balances: List[BalanceRes] = []
        for token in config.all_tokens():
            try:
                balances.append(await self._balance(enc, token))
            except PrivacyCashError as e:
                logger.warning(f"balance for {token.name} unavailable: {e}")
        return balances

    # ===== withdrawals =====
    async def prepare_withdraw(
        self,
        public_key: str,
        signature: str,
        amount: int,
        recipient_address: str,
        referrer: Optional[str] = None,
        mint_address: Optional[str] = None,
    ) -> PrepareWithdrawRes:
        """Spend `amount` base units; the recipient gets `amount - fee`.

        An SPL `mint_address` selects that asset's pool.
        """
        if amount <= 0:
            raise ValueError("withdrawal amount must be positive")
        token = config.get_token_by_mint(mint_address) if mint_address else config.SOL
        enc = self._session(public_key, signature)

        fees = await self.relayer.relay.get_fee_config()
        fee = compute_withdraw_fee(amount, fees.withdraw_fee_rate, token.to_base_units(fees.rent_fee(token.symbol)))
        payout = amount - fee
        if payout <= 0:
            raise AmountTooLowAfterFees(f"amount {amount} does not cover fee {fee}")
        minimum = token.to_base_units(fees.minimum(token.symbol))
        if amount < minimum:
            raise AmountTooLowAfterFees(f"amount {amount} is below the {token.name} minimum withdrawal {minimum}")

        tree = await self.relayer.tree.query_tree_state(token.tree_token)
        existing = await self.scanner.get_utxos(enc, token.tree_token)
        inputs = select_inputs(existing, enc.keypair("v2"), token.utxo_mint)
        total = total_amount(inputs)
        if total < amount:
            raise InsufficientBalance(f"largest notes hold {total}, need {amount}")
        change = total - amount

        if token.is_native:
            ext_recipient, fee_recipient = recipient_address, config.FEE_RECIPIENT
        else:
            ext_recipient = str(associated_token_address(recipient_address, token.mint))
            fee_recipient = str(associated_token_address(config.FEE_RECIPIENT, token.mint))

        proof, ext = await self._transact(
            enc,
            token=token,
            tree=tree,
            inputs=inputs,
            output_amount=change,
            ext_amount=-payout,
            fee=fee,
            recipient=ext_recipient,
            fee_recipient=fee_recipient,
        )

        params = build_withdraw_params(
            proof=proof,
            ext=ext,
            recipient=recipient_address,
            sender_address=public_key,
            referrer=referrer or config.ADMIN_REFERRAL_WALLET,
            mint=None if token.is_native else token.mint,
        )
        return PrepareWithdrawRes(
            withdraw_params=params,
            metadata=WithdrawMetadata(
                amount=payout,
                fee=fee,
                change=change,
                recipient=recipient_address,
                mint_address=params.mint_address,
            ),
        )

    async def submit_withdraw(self, withdraw_params: WithdrawParams | dict) -> SubmitRes:
        params = withdraw_params if isinstance(withdraw_params, WithdrawParams) else WithdrawParams.model_validate(withdraw_params)
        token = config.get_token_by_mint(params.mint_address) if params.mint_address else config.SOL
        result = await self.relayer.relay.relay_withdraw(params)
        output_hex = base64.b64decode(params.encrypted_output1).hex()
        confirmed = await self._poll_confirmation(output_hex, token.tree_token)
        return SubmitRes(signature=result.signature, success=result.success, confirmed=confirmed)


__all__ = ["PrivacyCashService", "compute_withdraw_fee"]
