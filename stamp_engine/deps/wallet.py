from stamp_engine.db import SessionLocal
from stamp_engine.services.wallet_pass_service import WalletPushClient


def get_wallet_client() -> WalletPushClient:
    return WalletPushClient()


def get_session_factory():
    # les tâches de fond ouvrent leur propre session, après le commit du ledger
    return SessionLocal
