import time

from prometheus_client import Counter, Histogram


REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

SEND_COUNTER = Counter("phoneverify_otp_send_total", "OTP send attempts", ["outcome"])
VERIFY_COUNTER = Counter("phoneverify_otp_verify_total", "OTP verify attempts", ["outcome"])
LOOKUP_COUNTER = Counter("phoneverify_intelligence_total", "Phone intelligence resolutions", ["source"])
RATE_LIMIT_COUNTER = Counter("phoneverify_rate_limit_total", "Multi-dimensional limiter verdicts", ["verdict"])


async def metrics_middleware(request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start
    # templated route path keeps label cardinality bounded
    route = getattr(request.scope.get("route"), "path", None) or request.url.path
    REQUESTS.labels(request.method, route, str(response.status_code)).inc()
    REQ_DURATION.labels(request.method, route).observe(duration)
    return response
