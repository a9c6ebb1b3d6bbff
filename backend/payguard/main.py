import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from .routers import health, payments
from .routers import config as config_router
from .db import Base, engine
from .models import payments as payment_models  # noqa: F401  (registers tables on Base)
from .mongo import mongo_enabled, get_mongo_db
from .config import check_provider_secrets, load_server_config_from_mongo
from .errors import PaymentError

app = FastAPI(title="payguard")
logger = logging.getLogger("uvicorn.error")

# Dev CORS (adjust origins for production)
app.add_middleware(
	CORSMiddleware,
	allow_origins=["*"],
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(config_router.router, prefix="/config", tags=["config"])


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
	if exc.status_code >= 500:
		logger.error("%s %s failed: %s", request.method, request.url.path, exc)
	else:
		logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
	return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
	errors = exc.errors()
	first = errors[0] if errors else {}
	# drop the leading 'body'/'query' segment
	path = ".".join(str(p) for p in list(first.get("loc", ()))[1:])
	message = first.get("msg", "Validation failed")
	return JSONResponse(status_code=400, content={"error": f"{path}: {message}" if path else message})


@app.on_event("startup")
async def on_startup():
	# Create SQL tables (simple setup; use migrations for production schemas)
	Base.metadata.create_all(bind=engine)

	if mongo_enabled():
		try:
			mdb = await get_mongo_db()
			if mdb is None:
				raise RuntimeError("Mongo client not available")
			await mdb.command("ping")
			await load_server_config_from_mongo(mdb)
			logger.info("Runtime config loaded from MongoDB")
		except Exception as e:
			logger.warning("Loading server config from MongoDB failed: %s", e)

	# Missing webhook secrets or provider credentials stop the service here
	check_provider_secrets()

	with engine.begin() as c:
		c.execute(text("SELECT 1"))
	logger.info("Database connected: %s", engine.dialect.name)


@app.get("/")
def read_root():
	return {"message": "payguard API is running"}


if __name__ == "__main__":
	import uvicorn
	uvicorn.run(app, host="0.0.0.0", port=8000)
