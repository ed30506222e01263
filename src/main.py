import logging
import os

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes import billing

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

origins = [origin for origin in [os.getenv("FRONTEND_BASE_URL")] if origin]

app = FastAPI(title="adledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def read_root():
    return {"message": "adledger billing service"}


# BILLING ROUTES ----------------------------------------------------------------------------------
app.include_router(billing.router)


# DB Start up after deploying
@app.on_event("startup")
async def run_migrations():
    if os.getenv("RUN_MIGRATIONS_ON_STARTUP", "true").lower() != "true":
        return
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, "head")
