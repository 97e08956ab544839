import csv
import io

from django.http import HttpResponse
from rest_framework.renderers import BaseRenderer


class CSVRenderer(BaseRenderer):
    """Lets `?format=csv` pass content negotiation on report and ledger endpoints.

    Views answer CSV requests with their own `HttpResponse`; this renderer only
    formats the payloads that still go through a DRF `Response`, such as errors.
    """

    media_type = "text/csv"
    format = "csv"
    charset = "utf-8"

    def render(self, data, accepted_media_type=None, renderer_context=None):
        if data is None:
            return b""
        if isinstance(data, dict):
            rows = data.get("results", [data])
        else:
            rows = data
        rows = [row for row in rows if isinstance(row, dict)]
        if not rows:
            return b""

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(rows[0].keys()), extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue().encode(self.charset)


def csv_response(filename, rows, fieldnames=None):
    response = HttpResponse(content_type="text/csv")
    response["Content-Disposition"] = f'attachment; filename="{filename}"'

    fieldnames = fieldnames or (list(rows[0].keys()) if rows else None)
    if not fieldnames:
        return response

    writer = csv.DictWriter(response, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return response


def wants_csv(request):
    return request.query_params.get("format") == "csv"
