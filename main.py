from fastapi import APIRouter, FastAPI, HTTPException, Request, Depends, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List, Optional
import logging
import structlog
import time
from contextlib import asynccontextmanager

from models import (
    Account,
    AddItemRequest,
    BuyRequest,
    ErrorResponse,
    HealthResponse,
    Item,
    LedgerErrorCode,
    LedgerResult,
    ListedItem,
    RegisterRequest,
)
from services import LedgerService, get_ledger_service
from repositories import LedgerStore
from storage import AccountStorage, JsonFileStorage
from exceptions import PersistenceError
from config import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog for the whole process."""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()

STATUS_FOR_ERROR = {
    LedgerErrorCode.account_already_exists: status.HTTP_409_CONFLICT,
    LedgerErrorCode.account_not_found: status.HTTP_404_NOT_FOUND,
    LedgerErrorCode.item_not_found: status.HTTP_404_NOT_FOUND,
    LedgerErrorCode.self_purchase: status.HTTP_400_BAD_REQUEST,
    LedgerErrorCode.insufficient_funds: status.HTTP_400_BAD_REQUEST,
    LedgerErrorCode.id_space_exhausted: status.HTTP_409_CONFLICT,
}


class LedgerHTTPException(HTTPException):
    """HTTP error raised for a rejected ledger operation."""

    def __init__(self, result: LedgerResult):
        super().__init__(status_code=STATUS_FOR_ERROR[result.error], detail=result.detail)
        self.error_code = result.error.value


router = APIRouter()


# Dependency injection
def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_service(store: LedgerStore = Depends(get_store)) -> LedgerService:
    return get_ledger_service(store)


# Root endpoint
@router.get("/", include_in_schema=False)
async def root():
    return {"message": "Marketplace Ledger API", "docs": "/docs"}


# Health check endpoint
@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics"
)
async def health_check(service: LedgerService = Depends(get_service)):
    try:
        accounts_count = await service.get_accounts_count()
        items_count = await service.get_items_count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            items_count=items_count
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )


# Rate limited, see build_limited_router
async def register(
    request: Request,
    register_request: RegisterRequest,
    service: LedgerService = Depends(get_service)
):
    result = await service.register(
        register_request.user_name,
        register_request.name,
        register_request.starting_balance
    )
    if not result:
        raise LedgerHTTPException(result)
    return result.account


@router.get(
    "/accounts/{user_name}",
    response_model=Account,
    summary="Get Account",
    responses={404: {"description": "Account not found"}}
)
async def get_account(user_name: str, service: LedgerService = Depends(get_service)):
    account = await service.lookup_account(user_name)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.delete(
    "/accounts/{user_name}",
    response_model=Account,
    summary="Delete Account",
    description="Delete an account and every item it owns",
    responses={404: {"description": "Account not found"}}
)
async def delete_account(user_name: str, service: LedgerService = Depends(get_service)):
    result = await service.delete_account(user_name)
    if not result:
        raise LedgerHTTPException(result)
    return result.account


@router.post(
    "/accounts/{user_name}/items",
    response_model=Item,
    status_code=status.HTTP_201_CREATED,
    summary="Add Item",
    responses={
        201: {"description": "Item created"},
        404: {"description": "Account not found"},
        409: {"description": "No free item ids left"}
    }
)
async def add_item(
    user_name: str,
    item_request: AddItemRequest,
    service: LedgerService = Depends(get_service)
):
    result = await service.add_item(user_name, item_request.name, item_request.price)
    if not result:
        raise LedgerHTTPException(result)
    return result.item


@router.get("/items", response_model=List[ListedItem], summary="List Items")
async def list_items(service: LedgerService = Depends(get_service)):
    return await service.list_items()


@router.get(
    "/items/{item_id}",
    response_model=ListedItem,
    summary="Get Item",
    responses={404: {"description": "Item not found"}}
)
async def get_item(item_id: int, service: LedgerService = Depends(get_service)):
    listed = await service.get_item(item_id)
    if listed is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return listed


# Main transaction endpoint, rate limited, see build_limited_router
async def buy_item(
    request: Request,
    buy_request: BuyRequest,
    service: LedgerService = Depends(get_service)
):
    try:
        logger.info(
            "Buy request received",
            buyer=buy_request.buyer,
            item_id=buy_request.item_id
        )

        result = await service.transfer(buy_request.buyer, buy_request.item_id)
        if not result:
            raise LedgerHTTPException(result)

        logger.info(
            "Buy request completed successfully",
            buyer=buy_request.buyer,
            item_id=buy_request.item_id
        )

        return result.account

    except HTTPException as e:
        logger.warning(
            "Buy request failed with HTTP exception",
            status_code=e.status_code,
            detail=e.detail,
            buyer=buy_request.buyer,
            item_id=buy_request.item_id
        )
        raise e


# Request logging middleware
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response


# Global exception handlers
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(ErrorResponse(
            detail=str(exc.detail),
            error_code=getattr(exc, "error_code", f"HTTP_{exc.status_code}")
        ))
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=jsonable_encoder(ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ))
    )


def build_limited_router(limiter: Limiter, settings: Settings) -> APIRouter:
    """Routes that create accounts or move money, limited per client address."""
    rate_limit = f"{settings.rate_limit_per_minute}/minute"
    limited_router = APIRouter()

    limited_router.add_api_route(
        "/register",
        limiter.limit(rate_limit)(register),
        methods=["POST"],
        response_model=Account,
        status_code=status.HTTP_201_CREATED,
        summary="Register Account",
        responses={
            201: {"description": "Account created"},
            409: {"description": "Account already exists"},
            429: {"description": "Rate limit exceeded"}
        }
    )
    limited_router.add_api_route(
        "/buy",
        limiter.limit(rate_limit)(buy_item),
        methods=["POST"],
        response_model=Account,
        summary="Buy Item",
        description="Transfer an item to the buyer and pay its price to the current owner",
        responses={
            200: {"description": "Item bought, returns the buyer's account"},
            400: {"description": "Self purchase or insufficient funds"},
            404: {"description": "Buyer or item not found"},
            429: {"description": "Rate limit exceeded"},
            500: {"description": "Internal server error"}
        }
    )
    return limited_router


def create_app(settings: Optional[Settings] = None, storage: Optional[AccountStorage] = None) -> FastAPI:
    """Build the API around a ledger store loaded at startup.

    A database that exists but cannot be read aborts startup.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Marketplace Ledger API", database_path=settings.database_path)
        store = LedgerStore(storage or JsonFileStorage(settings.database_path))
        try:
            store.load()
        except PersistenceError as e:
            logger.error("Failed to load database", error=str(e))
            raise
        app.state.store = store
        yield
        logger.info("Shutting down Marketplace Ledger API")

    app = FastAPI(
        title=settings.app_name,
        description="Accounts, items and item purchases backed by a JSON file",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add rate limiting
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=settings.allowed_methods,
        allow_headers=settings.allowed_headers,
    )
    app.middleware("http")(log_requests)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(router)
    app.include_router(build_limited_router(limiter, settings))
    return app


configure_logging(get_settings())
app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
