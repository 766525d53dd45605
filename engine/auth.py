from fastapi import Header, HTTPException
from config import settings


async def verify_engine_key(x_engine_key: str = Header(..., alias="X-ENGINE-KEY")):
    if x_engine_key != settings.ENGINE_KEY:
        raise HTTPException(status_code=403, detail="Invalid or missing ENGINE_KEY")
    return x_engine_key


async def current_user_id(x_user_id: int = Header(..., alias="X-USER-ID")) -> int:
    # Identity is asserted by the trusted front end that holds the engine key.
    return x_user_id
