from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.fees.router import router as fees_router
from app.api.v1.payments.router import router as payments_router
from app.api.v1.students.router import router as students_router
from app.core.logging_config import configure_logging


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed or missing input is a 400 like every other validation failure.
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Fee Ledger & Payment Settlement")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Routers
    app.include_router(students_router)
    app.include_router(fees_router)
    app.include_router(payments_router)

    return app


app = create_app()
