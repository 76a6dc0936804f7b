# services/api/prover.py
from __future__ import annotations

import asyncio
import json
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Protocol, Tuple

from services.api import config
from services.api.errors import ProofGenerationFailed
from services.api.logging_config import get_logger
from services.crypto_core.proof import CircuitInputs, ProofData, to_proof_data

logger = get_logger("prover")

ProverOutput = Tuple[Dict[str, Any], List[str]]


class Prover(Protocol):
    def prove(self, inputs: CircuitInputs) -> ProverOutput:
        """Return (groth16 proof JSON, public signals) for the input map."""


class SnarkjsProver:
    """Runs `snarkjs groth16 fullprove` against the transaction circuit artifacts."""

    def __init__(
        self,
        circuit_base_path: str = config.CIRCUIT_BASE_PATH,
        snarkjs_cmd: str = config.SNARKJS_CMD,
        timeout: float = config.PROVER_TIMEOUT_SEC,
    ):
        self.wasm = Path(f"{circuit_base_path}.wasm")
        self.zkey = Path(f"{circuit_base_path}.zkey")
        self.cmd = shlex.split(snarkjs_cmd)
        self.timeout = timeout

    def prove(self, inputs: CircuitInputs) -> ProverOutput:
        for artifact in (self.wasm, self.zkey):
            if not artifact.exists():
                raise ProofGenerationFailed(f"circuit artifact missing: {artifact}")

        with tempfile.TemporaryDirectory(prefix="pc-prove-") as tmp:
            d = Path(tmp)
            input_path, proof_path, public_path = d / "input.json", d / "proof.json", d / "public.json"
            input_path.write_text(json.dumps(inputs))
            cmd = self.cmd + [
                "groth16", "fullprove",
                str(input_path), str(self.wasm), str(self.zkey),
                str(proof_path), str(public_path),
            ]
            try:
                p = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            except (OSError, subprocess.TimeoutExpired) as e:
                raise ProofGenerationFailed(f"prover did not run: {e}") from e
            if p.returncode != 0:
                err = (p.stderr or p.stdout or "").strip()
                raise ProofGenerationFailed(f"prover failed (rc={p.returncode}): {err[:500]}")
            try:
                proof = json.loads(proof_path.read_text())
                public = json.loads(public_path.read_text())
            except (OSError, ValueError) as e:
                raise ProofGenerationFailed(f"prover output unreadable: {e}") from e
        return proof, [str(s) for s in public]


class ProofPipeline:
    """Prove off the event loop and re-encode the result for the verifier."""

    def __init__(self, prover: Prover):
        self.prover = prover

    async def prove(self, inputs: CircuitInputs) -> ProofData:
        t0 = time.time()
        try:
            proof, public_signals = await asyncio.to_thread(self.prover.prove, inputs)
        except ProofGenerationFailed:
            raise
        except Exception as e:
            raise ProofGenerationFailed(f"prover error: {e}") from e
        logger.info(f"proof generated in {(time.time() - t0) * 1000:.0f} ms")

        try:
            data = to_proof_data(proof, public_signals)
        except ValueError as e:
            raise ProofGenerationFailed(str(e)) from e
        if str(public_signals[0]) != str(inputs["root"]):
            raise ProofGenerationFailed("prover returned signals for a different root")
        return data


__all__ = ["Prover", "ProverOutput", "SnarkjsProver", "ProofPipeline"]
