"""
Interceptors
------------
Ordered transform chains around the network call.

- Request interceptors: APIRequest -> APIRequest
- Response interceptors: APIResponse -> APIResponse
- Error interceptors: APIError -> APIError | APIResponse
  (returning a response absorbs the error as a fallback)

Chains are applied as an explicit left fold in registration order.
"""

from typing import Awaitable, Callable, Generic, List, Protocol, TypeVar, Union

from api.models import APIRequest, APIResponse
from core.errors import APIError

In = TypeVar("In", contravariant=True)
Out = TypeVar("Out", covariant=True)
A = TypeVar("A")
B = TypeVar("B")


class Interceptor(Protocol[In, Out]):
    async def transform(self, value: In) -> Out: ...


RequestInterceptor = Interceptor[APIRequest, APIRequest]
ResponseInterceptor = Interceptor[APIResponse, APIResponse]
ErrorInterceptor = Interceptor[APIError, Union[APIError, APIResponse]]


class FunctionInterceptor(Generic[A, B]):
    """Adapts a coroutine function to the interceptor protocol."""

    def __init__(self, func: Callable[[A], Awaitable[B]]):
        self._func = func
        self.__name__ = getattr(func, "__name__", type(self).__name__)

    async def transform(self, value: A) -> B:
        return await self._func(value)

    def __repr__(self) -> str:
        return f"FunctionInterceptor({self.__name__})"


class InterceptorChain:
    """Registered interceptors for one client."""

    def __init__(self):
        self.request: List[RequestInterceptor] = []
        self.response: List[ResponseInterceptor] = []
        self.error: List[ErrorInterceptor] = []

    async def apply_request(self, request: APIRequest) -> APIRequest:
        for interceptor in self.request:
            request = await interceptor.transform(request)
        return request

    async def apply_response(self, response: APIResponse) -> APIResponse:
        for interceptor in self.response:
            response = await interceptor.transform(response)
        return response

    async def apply_error(self, error: APIError) -> Union[APIError, APIResponse]:
        """
        Fold the error through the chain.

        Stops at the first interceptor that returns a response.
        """
        current: Union[APIError, APIResponse] = error
        for interceptor in self.error:
            current = await interceptor.transform(current)
            if isinstance(current, APIResponse):
                break
        return current
