from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from qattend.errors import ErrorKind, QAttendError
from qattend.routes.admin import router as admin_router
from qattend.routes.attendance import router as attendance_router
from qattend.routes.profiles import router as profiles_router
from qattend.utils.logger import logger

CORS_ALLOWED_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": ", ".join(CORS_ALLOWED_HEADERS),
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


# --- LIFESPAN ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting QAttend API")
    yield
    logger.info("🛑 Shutting down")


# --- APP ---
app = FastAPI(title="QAttend API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=CORS_ALLOWED_HEADERS,
)


# Registered after CORSMiddleware, so it runs first: every OPTIONS request
# (browser preflight or not) gets an empty 200 with the CORS headers.
@app.middleware("http")
async def answer_preflight(request: Request, call_next):
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)
    return await call_next(request)


# --- ERROR HANDLERS ---
@app.exception_handler(QAttendError)
async def handle_qattend_error(request: Request, exc: QAttendError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code} {exc.kind.value}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "code": ErrorKind.INVALID_REQUEST.value},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(f"💥 Unhandled error in {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": ErrorKind.INTERNAL.value},
        headers=CORS_HEADERS,
    )


# --- ENDPOINTS ---
@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(attendance_router)
app.include_router(profiles_router)
app.include_router(admin_router)


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("qattend.main:app", host="0.0.0.0", port=port)
