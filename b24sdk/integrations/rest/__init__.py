"""REST integration package."""

from b24sdk.integrations.rest.batch import BatchEngine
from b24sdk.integrations.rest.client import B24Client
from b24sdk.integrations.rest.dispatcher import START_NO_COUNT, CallDispatcher
from b24sdk.integrations.rest.list_iterator import ListIterator
from b24sdk.integrations.rest.transport import HttpRequest, HttpResponse, HttpTransport, HttpxTransport

__all__ = [
    "B24Client",
    "BatchEngine",
    "CallDispatcher",
    "HttpRequest",
    "HttpResponse",
    "HttpTransport",
    "HttpxTransport",
    "ListIterator",
    "START_NO_COUNT",
]
