from rest_framework.pagination import PageNumberPagination

from common.responses import success_response


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination behavior for list endpoints.

    Clients can tune page size with `?page_size=` but values are capped to keep
    payload sizes predictable.
    """

    page_size_query_param = "page_size"
    max_page_size = 200

    def get_envelope_response(self, data, *, message):
        return success_response(
            message=message,
            data={
                "count": self.page.paginator.count,
                "next": self.get_next_link(),
                "previous": self.get_previous_link(),
                "results": data,
            },
        )


def paginated_envelope(request, queryset, serializer_class, *, message, view=None, context=None):
    paginator = StandardResultsSetPagination()
    page = paginator.paginate_queryset(queryset, request, view=view)
    serializer = serializer_class(page, many=True, context=context or {"request": request})
    return paginator.get_envelope_response(serializer.data, message=message)
