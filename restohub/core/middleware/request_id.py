import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from restohub.core.logging import request_id_ctx_var, latency_bucket_ms


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a request_id to each request and log completion.

    Runs outermost, so the completion line can also report the plan that
    SubscriptionAccessMiddleware resolved for the request (if any).
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        latency_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        fields = {
            "request_id": rid,
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "latency_bucket": latency_bucket_ms(latency_ms),
        }
        subscription_status = getattr(request.state, "subscription_status", None)
        if subscription_status is not None:
            fields["plan_id"] = subscription_status.plan.id
            fields["subscription_active"] = subscription_status.is_active

        logging.getLogger("restohub").info("request.complete", extra=fields)
        return response
