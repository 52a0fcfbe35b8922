from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from stamp_engine import config
from stamp_engine.db import engine, Base
from stamp_engine.logging_setup import configure_logging

from stamp_engine.models.app_user import AppUser
from stamp_engine.models.loyalty_program import LoyaltyProgram
from stamp_engine.models.loyalty_pass_request import LoyaltyPassRequest
from stamp_engine.models.loyalty_membership import LoyaltyMembership
from stamp_engine.models.loyalty_earn_event import LoyaltyEarnEvent
from stamp_engine.models.loyalty_redemption import LoyaltyRedemption

from stamp_engine.routes.programs import router as programs_router
from stamp_engine.routes.loyalty import router as loyalty_router
from stamp_engine.routes.admin import router as admin_router

app = FastAPI(title="Stamp Engine")

# ─── CORS ─────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup():
    configure_logging(level=config.LOG_LEVEL, json_output=config.LOG_JSON)
    Base.metadata.create_all(bind=engine)


app.include_router(programs_router)
app.include_router(loyalty_router)
app.include_router(admin_router)


@app.get("/")
def read_root():
    return {"message": "Stamp Engine is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8001, reload=True)
