import re
import contextlib
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clinic_claims.dependencies import close_transports
from clinic_claims.insurance_database import create_tables
from clinic_claims.router.authorization import router as authorization_router
from clinic_claims.router.claim import router as claim_router

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Creates the ledger tables on startup and closes the insurer clients on shutdown.
    """
    create_tables()
    try:
        yield
    finally:
        await close_transports()


app = FastAPI(
    title="Clinic Insurance Claims API",
    lifespan=lifespan,
)


app.include_router(claim_router, prefix="/api")
app.include_router(authorization_router, prefix="/api")


@app.middleware("http")
async def fix_invalid_json_backslashes(request: Request, call_next):
    # Only apply to JSON requests
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type:
        return await call_next(request)

    body = await request.body()
    if not body:
        return await call_next(request)

    try:
        raw = body.decode("utf-8")
    except UnicodeDecodeError:
        return JSONResponse(
            {"error": "Invalid UTF-8 JSON payload"},
            status_code=400,
        )

    # Windows paths and serial numbers like 03\2025\17 arrive unescaped;
    # valid escapes are matched whole so an escaped \\ stays intact
    fixed = re.sub(r'\\(["\\/bfnrtu])|\\', lambda m: m.group(0) if m.group(1) else '\\\\', raw)

    request._body = fixed.encode("utf-8")

    return await call_next(request)
