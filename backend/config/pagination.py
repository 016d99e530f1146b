from django.conf import settings
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class OptionalPageNumberPagination(PageNumberPagination):
    page_size = settings.API_PAGINATION_DEFAULT_PAGE_SIZE
    page_size_query_param = "page_size"
    max_page_size = settings.API_PAGINATION_MAX_PAGE_SIZE


class OptionalPaginationListMixin:
    """Paginate list responses only when the client asks for a ``page``.

    Order and ticket lists are short per user, so the plain list is the default.
    """

    pagination_class = OptionalPageNumberPagination

    def list(self, request, *args, **kwargs):
        queryset = self.filter_queryset(self.get_queryset())
        if "page" not in request.query_params:
            return Response(self.get_serializer(queryset, many=True).data)

        page = self.paginate_queryset(queryset)
        if page is None:
            return Response(self.get_serializer(queryset, many=True).data)
        return self.get_paginated_response(self.get_serializer(page, many=True).data)
