from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stockledger.config import CORS_ORIGINS
from stockledger.logging_config import setup_logging
from stockledger.routers import audit, auth, bom, health, inventory, notifications, production

setup_logging()

app = FastAPI(title="Stockledger API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(inventory.router)
app.include_router(bom.router)
app.include_router(production.router)
app.include_router(audit.router)
app.include_router(notifications.router)


@app.get("/")
def root():
    return {"status": "ok"}
