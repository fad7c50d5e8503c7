"""
Module routes/health.py
Rôle:
- Endpoints de santé (service OK + état de la toolchain Noir).

Intégrations:
- settings: nom d'app.
- ENGINE.bridge: exécutable `nargo` résolu, circuits présents/compilés.
"""
from fastapi import APIRouter

from app.config.settings import settings
from app.services.session_engine import ENGINE

router = APIRouter(prefix="/health", tags=["health"])

@router.get("")
async def health():
    """Renvoie un OK minimal avec le nom de service configuré."""
    return {"ok": True, "service": settings.APP_NAME}

@router.get("/prover")
def health_prover():
    """
    Vérifie la disponibilité du prouveur sans l'invoquer:
    - `executable`: chemin résolu de `nargo` (None si absent du PATH),
    - `circuits`: présence du dossier et du `target/` compilé pour chaque circuit,
    - `busy`: une opération ZK est-elle en cours.
    """
    status_fn = getattr(ENGINE.bridge, "toolchain_status", None)
    status = status_fn() if status_fn else {"ok": True, "executable": None, "circuits": {}}
    return {**status, "busy": ENGINE.gate.busy}
