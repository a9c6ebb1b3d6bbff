from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from ..db import get_db
from ..mongo import get_mongo_db, mongo_enabled

router = APIRouter()


@router.get("/")
def root():
    return {"status": "ok"}


@router.get("/db")
async def db_health(db: Session = Depends(get_db), mdb=Depends(get_mongo_db)):
    out = {"status": "ok", "sql": "ok"}
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        out.update(status="error", sql="error", detail=str(e))

    # Mongo only carries runtime config, so losing it degrades rather than fails
    if mongo_enabled() and mdb is not None:
        try:
            await mdb.command("ping")
            out["mongo"] = "ok"
        except Exception as e:
            out["mongo"] = "error"
            if out["status"] == "ok":
                out["status"] = "degraded"
            out.setdefault("detail", str(e))
    return out
