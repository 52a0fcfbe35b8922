from typing import Optional

from pydantic import BaseModel


class EarnRequest(BaseModel):
    publicId: str
    token: str
    walletPassId: str
    method: Optional[str] = "counter_qr"
