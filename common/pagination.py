from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination behavior for list endpoints.

    Clients can tune page size with `?page_size=` but values are capped to keep
    payload sizes predictable; the order and payment tables of the dashboard
    ask for at most one page of 200 rows.
    """

    page_size_query_param = "page_size"
    max_page_size = 200
