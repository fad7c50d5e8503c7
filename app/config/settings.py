"""
Configuration de l'application (Settings)
=========================================

Rôle
----
- Centraliser les paramètres de l'app (nom, host/port, CORS, toolchain Noir, délais).
- Les valeurs par défaut conviennent pour un environnement de dev local.
- Les variables peuvent être surchargées via un fichier `.env` ou l'environnement.

Intégrations
------------
- `pydantic-settings` charge automatiquement les variables d'env et `.env`.
- Les services/routers importent `from app.config.settings import settings`.

Notes
-----
- `CIRCUITS_DIR` pointe par défaut vers `<repo>/noir_circuits`, chaque circuit
  étant un sous-dossier (`commitment_helper`, `rps_logic`).
- `PROVER_TIMEOUT_SECONDS` borne chaque appel à `nargo` : un prouveur bloqué ne doit
  jamais laisser la partie verrouillée.

Exemples de `.env`
------------------
PORT=4000
NARGO_COMMAND="/opt/noir/bin/nargo"
CIRCUITS_DIR="/srv/zk-rps/noir_circuits"
PROVER_TIMEOUT_SECONDS=30
STRICT_COMMITMENT_MATCH=true
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
import os


class Settings(BaseSettings):
    # Nom du service (apparaît dans /health)
    APP_NAME: str = "ZK RPS Backend"
    # Bind réseau (FastAPI / Uvicorn)
    HOST: str = "0.0.0.0"
    PORT: int = 4000
    LOG_LEVEL: str = "INFO"

    # Front autorisé (CORS)
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Toolchain Noir
    NARGO_COMMAND: str = "nargo"
    # Par défaut: <repo>/noir_circuits
    CIRCUITS_DIR: str = os.path.join(
        os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "noir_circuits"
    )
    COMMITMENT_CIRCUIT: str = "commitment_helper"
    REVEAL_CIRCUIT: str = "rps_logic"
    PROVER_TIMEOUT_SECONDS: float = 60.0
    VERIFY_CIRCUITS_ON_STARTUP: bool = True

    # Règles de partie
    RESET_COOLDOWN_SECONDS: float = 2.0
    # False: un engagement renvoyé par le client qui diffère de celui du serveur est
    # seulement journalisé (la valeur serveur fait foi).
    STRICT_COMMITMENT_MATCH: bool = False

    # Paramétrage pydantic-settings :
    # - lit le fichier .env (UTF-8) si présent
    # - ignore les clés supplémentaires pour éviter les erreurs
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def commitment_circuit_dir(self) -> str:
        return os.path.join(self.CIRCUITS_DIR, self.COMMITMENT_CIRCUIT)

    @property
    def reveal_circuit_dir(self) -> str:
        return os.path.join(self.CIRCUITS_DIR, self.REVEAL_CIRCUIT)


# Instance unique importable partout : `settings`
settings = Settings()
