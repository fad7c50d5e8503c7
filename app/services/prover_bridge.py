"""
Service: prover_bridge.py
- Centralise les appels à la toolchain Noir (`nargo`) pour les deux circuits du jeu.
- `commitment_helper` : dérive l'engagement d'un couple (move, salt).
- `rps_logic` : vérifie qu'un (move, salt) correspond bien à l'engagement stocké.

Protocole fichier:
- `nargo` ne lit ses entrées que dans `<circuit>/Prover.toml` : un seul appel par circuit
  à la fois (garanti en amont par la porte ZK du moteur de session).
- Le fichier de paramètres est supprimé quoi qu'il arrive, ainsi que le témoin produit.
- La vérification utilise un nom de témoin unique par appel pour ne jamais confondre
  un artefact résiduel d'une exécution précédente avec un succès.

Chaque invocation est bornée par `PROVER_TIMEOUT_SECONDS` et journalisée avec un
identifiant de corrélation (`prover_op_id`).
"""
from __future__ import annotations

import logging
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Set
from uuid import uuid4

from app.config.settings import settings
from .field_codec import canonicalize_salt, reduce_field_literal

logger = logging.getLogger(__name__)

PROVER_TOML = "Prover.toml"
COMMIT_WITNESS_NAME = "witness_name_ignored_for_commit"
REVEAL_WITNESS_PREFIX = "rps_reveal_witness_"
FIELD_LITERAL_RE = re.compile(r"Field\(([-\d]+)\)")


class ProverError(RuntimeError):
    """Erreur de base pour tout échec côté toolchain."""


class ProverInvocationError(ProverError):
    """Le process externe a échoué, expiré, ou n'a pas pu être lancé."""


class OutputParseError(ProverError):
    """La sortie de `nargo` ne contient pas d'élément de corps exploitable."""


class ProverSetupError(ProverError):
    """Circuits introuvables au démarrage."""


def render_prover_toml(params: Dict[str, Any]) -> str:
    """Rend les paramètres au format `key = "value"` (une ligne par clé)."""
    return "".join(f'{key} = "{value}"\n' for key, value in params.items())


def parse_commitment(raw_output: str) -> str:
    """Extrait le premier littéral `Field(n)` de la sortie et le rend canonique."""
    match = FIELD_LITERAL_RE.search(raw_output or "")
    if not match:
        raise OutputParseError(f"Could not parse Nargo output as Field element: {raw_output!r}")
    try:
        return reduce_field_literal(match.group(1))
    except ValueError as exc:
        raise OutputParseError(str(exc)) from exc


class ProverBridge(ABC):
    """Contrat consommé par le moteur de session (remplaçable par un double de test)."""

    @abstractmethod
    def derive_commitment(self, move: int, salt: str) -> str:
        """Retourne l'engagement hex canonique de (move, salt)."""

    @abstractmethod
    def verify_reveal(self, move: int, salt: str, commitment: str) -> bool:
        """True si (move, salt) satisfait le circuit pour `commitment`."""


class NargoProverBridge(ProverBridge):
    """
    Implémentation réelle basée sur `nargo execute`.
    - Compile le circuit à la première utilisation si `target/<circuit>.json` est absent.
    - Convertit timeouts et exécutable manquant en `ProverInvocationError`.
    """

    def __init__(
        self,
        commitment_circuit_dir: str | Path,
        reveal_circuit_dir: str | Path,
        *,
        nargo_command: str = "nargo",
        timeout: float = 60.0,
    ) -> None:
        self.commitment_dir = Path(commitment_circuit_dir)
        self.reveal_dir = Path(reveal_circuit_dir)
        self.nargo_command = nargo_command
        self.timeout = timeout
        self._compiled: Set[Path] = set()

    @classmethod
    def from_settings(cls) -> "NargoProverBridge":
        return cls(
            settings.commitment_circuit_dir,
            settings.reveal_circuit_dir,
            nargo_command=settings.NARGO_COMMAND,
            timeout=settings.PROVER_TIMEOUT_SECONDS,
        )

    # ------------------------------------------------------------------
    # Plomberie process / fichiers
    # ------------------------------------------------------------------
    def _run(self, circuit_dir: Path, args: list[str], op_id: str) -> subprocess.CompletedProcess:
        cmd = [self.nargo_command, *args]
        logger.debug("Running %s in %s", cmd, circuit_dir, extra={"prover_op_id": op_id})
        try:
            return subprocess.run(
                cmd,
                cwd=str(circuit_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            logger.error("Prover timed out after %ss", self.timeout, extra={"prover_op_id": op_id})
            raise ProverInvocationError(f"nargo timed out after {self.timeout}s") from exc
        except OSError as exc:
            logger.error("Prover could not be started", exc_info=True, extra={"prover_op_id": op_id})
            raise ProverInvocationError(f"cannot run {self.nargo_command}: {exc}") from exc

    def _ensure_compiled(self, circuit_dir: Path, op_id: str) -> None:
        if circuit_dir in self._compiled:
            return
        artifact = circuit_dir / "target" / f"{circuit_dir.name}.json"
        if not artifact.exists():
            logger.info("Compiling circuit %s", circuit_dir.name, extra={"prover_op_id": op_id})
            proc = self._run(circuit_dir, ["compile"], op_id)
            if proc.returncode != 0:
                logger.error(
                    "Compilation failed: %s", proc.stderr, extra={"prover_op_id": op_id}
                )
                raise ProverInvocationError(f"nargo compile failed for {circuit_dir.name}")
        self._compiled.add(circuit_dir)

    @contextmanager
    def _parameter_file(self, circuit_dir: Path, params: Dict[str, Any]) -> Iterator[Path]:
        path = circuit_dir / PROVER_TOML
        try:
            path.write_text(render_prover_toml(params), encoding="utf-8")
        except OSError as exc:
            raise ProverInvocationError(f"cannot write {path}: {exc}") from exc
        try:
            yield path
        finally:
            path.unlink(missing_ok=True)

    @staticmethod
    def _witness_path(circuit_dir: Path, witness_name: str) -> Path:
        return circuit_dir / "target" / f"{witness_name}.gz"

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------
    def derive_commitment(self, move: int, salt: str) -> str:
        op_id = f"commit-{uuid4().hex}"
        formatted_salt = canonicalize_salt(salt)
        witness = self._witness_path(self.commitment_dir, COMMIT_WITNESS_NAME)
        try:
            with self._parameter_file(self.commitment_dir, {"move": move, "salt": formatted_salt}):
                self._ensure_compiled(self.commitment_dir, op_id)
                proc = self._run(
                    self.commitment_dir, ["execute", COMMIT_WITNESS_NAME, "--force"], op_id
                )
                if proc.returncode != 0:
                    logger.error(
                        "Commitment derivation failed (exit=%s): %s",
                        proc.returncode,
                        proc.stderr,
                        extra={"prover_op_id": op_id},
                    )
                    raise ProverInvocationError(
                        f"nargo execute exited with code {proc.returncode}"
                    )
                commitment = parse_commitment(proc.stdout)
        finally:
            witness.unlink(missing_ok=True)
        logger.info(
            "Commitment derived for move %s: %s", move, commitment, extra={"prover_op_id": op_id}
        )
        return commitment

    def verify_reveal(self, move: int, salt: str, commitment: str) -> bool:
        op_id = f"reveal-{uuid4().hex}"
        witness_name = f"{REVEAL_WITNESS_PREFIX}{uuid4().hex}"
        witness = self._witness_path(self.reveal_dir, witness_name)
        params = {"move": move, "salt": canonicalize_salt(salt), "commitment": commitment}
        try:
            with self._parameter_file(self.reveal_dir, params):
                self._ensure_compiled(self.reveal_dir, op_id)
                proc = self._run(self.reveal_dir, ["execute", witness_name, "--force"], op_id)
                if proc.returncode != 0:
                    logger.warning(
                        "Constraints not satisfied for move %s (exit=%s): %s",
                        move,
                        proc.returncode,
                        proc.stderr,
                        extra={"prover_op_id": op_id},
                    )
                    return False
                if not witness.exists():
                    logger.warning(
                        "Nargo OK but witness file %s not found", witness, extra={"prover_op_id": op_id}
                    )
                    return False
                logger.info("Witness for move %s generated", move, extra={"prover_op_id": op_id})
                return True
        finally:
            witness.unlink(missing_ok=True)

    def diagnose_mismatch(self, move: int, salt: str, commitment: str) -> Dict[str, Any]:
        """Recalcule l'engagement de (move, salt) pour expliquer un échec de vérification."""
        recomputed: Optional[str] = None
        error: Optional[str] = None
        try:
            recomputed = self.derive_commitment(move, salt)
        except ProverError as exc:
            error = str(exc)
        expected = commitment.lower()
        return {
            "expected": expected,
            "recomputed": recomputed,
            "match": recomputed == expected,
            "error": error,
        }

    # ------------------------------------------------------------------
    # Diagnostic / démarrage
    # ------------------------------------------------------------------
    def toolchain_status(self) -> Dict[str, Any]:
        """État de la toolchain pour /health/prover."""
        circuits = {}
        for circuit_dir in (self.commitment_dir, self.reveal_dir):
            circuits[circuit_dir.name] = {
                "path": str(circuit_dir),
                "exists": circuit_dir.is_dir(),
                "compiled": (circuit_dir / "target").is_dir(),
            }
        executable = shutil.which(self.nargo_command)
        return {
            "ok": bool(executable) and all(c["exists"] for c in circuits.values()),
            "executable": executable,
            "circuits": circuits,
        }

    def verify_circuits(self) -> None:
        """Échoue si un circuit manque; simple warning si non compilé."""
        for circuit_dir in (self.commitment_dir, self.reveal_dir):
            if not circuit_dir.is_dir():
                raise ProverSetupError(f"Circuit path NOT FOUND: {circuit_dir}")
            if not (circuit_dir / "target").is_dir():
                logger.warning(
                    "Circuit at %s might not be compiled (no 'target' dir)", circuit_dir
                )
            else:
                logger.info("Found target directory for %s", circuit_dir.name)
