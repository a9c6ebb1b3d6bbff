from fastapi import APIRouter, Depends
from ..mongo import get_mongo_db
from ..config import get_public_config

router = APIRouter()


# '' as well as '/' so '/config' doesn't 307 behind proxies
@router.get("")
@router.get("/")
async def read_public_config(mdb=Depends(get_mongo_db)):
    """Providers a client may offer, the plan catalog and PUBLIC_* values. Never secrets."""
    return {"config": await get_public_config(mdb)}
