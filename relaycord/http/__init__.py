"""REST side: rate limit buckets, request dispatcher and API helpers."""

from relaycord.http.api import RestApi
from relaycord.http.buckets import GLOBAL_KEY, Admission, Bucket, BucketRegistry, RateLimitHit
from relaycord.http.client import HTTPRequest, HTTPResponse, HTTPTransport
from relaycord.http.dispatcher import PendingRequest, RequestDispatcher
from relaycord.http.routes import Route

__all__ = [
    "GLOBAL_KEY",
    "Admission",
    "Bucket",
    "BucketRegistry",
    "HTTPRequest",
    "HTTPResponse",
    "HTTPTransport",
    "PendingRequest",
    "RateLimitHit",
    "RequestDispatcher",
    "RestApi",
    "Route",
]
