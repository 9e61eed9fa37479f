from fastapi import APIRouter, Depends, HTTPException, Request, status

from marketsync.errors import ErrorKind, MarketDataError, RateLimitError, ValidationError
from marketsync.schemas.provider import MarketDataSnapshot, normalize_symbol
from marketsync.schemas.requests import CacheStats, FinancialDataRequest
from marketsync.service import MarketDataService

router = APIRouter()

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.NETWORK: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.UPSTREAM: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.UNKNOWN: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_service(request: Request) -> MarketDataService:
    return request.app.state.market_data


def get_client_identity(request: Request) -> str:
    """Rate-limit identity: the socket peer, or the hop our proxy appended when trusted."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and getattr(request.app.state, "trust_forwarded_for", False):
        # Earlier entries are client-supplied; only the last one was written by the proxy.
        hop = forwarded.split(",")[-1].strip()
        if hop:
            return hop
    return request.client.host if request.client else "anonymous"


def _to_http_exception(error: MarketDataError) -> HTTPException:
    headers = None
    if isinstance(error, RateLimitError) and error.retry_after_ms:
        headers = {"Retry-After": str(-(-error.retry_after_ms // 1000))}
    return HTTPException(
        status_code=_STATUS_BY_KIND[error.kind],
        detail={"code": error.kind.value, "message": error.message},
        headers=headers,
    )


async def _load_snapshot(ticker: str, identity: str, service: MarketDataService) -> MarketDataSnapshot:
    try:
        return await service.get_snapshot(ticker, identity)
    except MarketDataError as exc:
        raise _to_http_exception(exc) from exc


@router.get("/health")
def health(service: MarketDataService = Depends(get_service)) -> dict:
    mode = getattr(service.rate_limiter, "mode", "memory")
    return {"status": "ok", "rate_limiter": mode}


@router.get("/api/financial-data/{ticker}", response_model=MarketDataSnapshot)
async def financial_data_endpoint(
    ticker: str,
    identity: str = Depends(get_client_identity),
    service: MarketDataService = Depends(get_service),
) -> MarketDataSnapshot:
    return await _load_snapshot(ticker, identity, service)


@router.post("/api/financial-data", response_model=MarketDataSnapshot)
async def financial_data_post_endpoint(
    payload: FinancialDataRequest,
    identity: str = Depends(get_client_identity),
    service: MarketDataService = Depends(get_service),
) -> MarketDataSnapshot:
    return await _load_snapshot(payload.ticker, identity, service)


@router.get("/api/cache/stats", response_model=CacheStats)
def cache_stats_endpoint(service: MarketDataService = Depends(get_service)) -> CacheStats:
    return CacheStats(**service.cache.stats(), pending=service.dedup.pending_keys())


@router.delete("/api/cache/{ticker}")
def invalidate_cache_endpoint(
    ticker: str, service: MarketDataService = Depends(get_service)
) -> dict:
    try:
        symbol = normalize_symbol(ticker)
    except ValidationError as exc:
        raise _to_http_exception(exc) from exc
    return {"symbol": symbol, "invalidated": service.cache.invalidate(symbol)}


@router.delete("/api/cache")
def clear_cache_endpoint(service: MarketDataService = Depends(get_service)) -> dict:
    size = len(service.cache)
    service.cache.clear()
    return {"cleared": size}
