"""
Application FastAPI : point d'entrée
====================================

Rôle
----
- Instancie l'app FastAPI, configure le CORS pour le front,
- Monte les routeurs (REST + WebSocket),
- Vérifie au démarrage que les circuits Noir sont en place (échec immédiat sinon).

Notes
-----
- ⚠️ Le middleware CORS doit être ajouté AVANT les include_router.
- Lancement: `uvicorn app.main:app --port 4000`
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.routes.game import router as game_router
from app.routes.health import router as health_router
from app.routes.websocket import router as ws_router

from app.config.settings import settings
from app.services.prover_bridge import NargoProverBridge
from app.services.session_engine import ENGINE
from app.services.ws_manager import WS

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    await startup()
    try:
        yield
    finally:
        await shutdown()


# --- App FastAPI principale  ---
app = FastAPI(title="ZK RPS Backend", lifespan=lifespan)

# ===========================
# CORS
# ===========================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# ===========================
# Montage des routers
# ===========================
app.include_router(ws_router)                  # WebSocket endpoint (/ws)
app.include_router(game_router)
app.include_router(health_router)


# --- Racine utile pour "ping" simple (sans /health) ---
@app.get("/")
async def root():
    """Ping basique : permet de vérifier que l'app tourne (sans appel au prouveur)."""
    return {"ok": True, "service": "zk-rps-backend"}


# --- Hooks de cycle de vie (appelés par `lifespan`) ---
async def startup():
    """
    Au démarrage:
    - configure le logging,
    - vérifie les chemins des circuits (ProverSetupError => le process ne démarre pas),
    - liste les routes (diagnostic).
    """
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("ZK-RPS backend listening on port %s", settings.PORT)
    logger.info("Commitment circuit: %s", settings.commitment_circuit_dir)
    logger.info("Reveal circuit: %s", settings.reveal_circuit_dir)
    if settings.VERIFY_CIRCUITS_ON_STARTUP and isinstance(ENGINE.bridge, NargoProverBridge):
        ENGINE.bridge.verify_circuits()
    for r in app.routes:
        # certains objets (routeurs inclus) n'exposent pas `path`
        logger.debug("Route %s %s", getattr(r, "path", r), getattr(r, "methods", None) or "WS")


async def shutdown():
    """Coupe le timer de reset et ferme les sockets restantes."""
    ENGINE.debouncer.cancel()
    await WS.close_all()
