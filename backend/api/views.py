import logging

from django.http import HttpResponse
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response

from .serializers import ConvertRequestSerializer
from analytics.classifier import classify_trades
from analytics.parser import parse_report_file
from analytics.pine import generate_script
from analytics.summary import NO_TRADES_MESSAGE, summarize_groups
from analytics.timekeeping import clock_from_settings

logger = logging.getLogger(__name__)


class ReportError(Exception):
    def __init__(self, payload, status_code=status.HTTP_400_BAD_REQUEST):
        super().__init__(payload)
        self.payload = payload
        self.status_code = status_code


def _classify_upload(request):
    """Parse + classify the uploaded statement. Nothing is stored."""
    serializer = ConvertRequestSerializer(data=request.data)
    if not serializer.is_valid():
        logger.warning("Rejected upload: %s", serializer.errors)
        raise ReportError({"error": serializer.errors})

    tolerance = serializer.validated_data["tolerance"]
    clock = clock_from_settings()
    try:
        trades = parse_report_file(serializer.validated_data["file"])
        grouped = classify_trades(trades, tolerance, clock)
    except ValueError as e:
        logger.warning("Rejected upload: %s", e)
        raise ReportError({"error": str(e)})

    if not grouped:
        raise ReportError({"error": NO_TRADES_MESSAGE})
    return grouped, tolerance, clock, len(trades)


class ConvertReportAPIView(APIView):
    """Upload an MT4 HTML statement, get trades grouped per item + Pine scripts."""

    def post(self, request):
        try:
            grouped, tolerance, clock, n_trades = _classify_upload(request)
        except ReportError as e:
            return Response(e.payload, status=e.status_code)

        try:
            items = summarize_groups(grouped, clock)
        except ValueError as e:
            logger.warning("Rejected upload: %s", e)
            return Response({"error": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        return Response({
            "tolerance": tolerance,
            "n_trades": n_trades,
            "items": items,
        })


class ItemScriptAPIView(APIView):
    """Same upload, returns only the Pine script of one item as plain text."""

    def post(self, request, item):
        try:
            grouped, _, clock, _ = _classify_upload(request)
        except ReportError as e:
            return Response(e.payload, status=e.status_code)

        key = item.strip().lower()
        if key not in grouped:
            return Response({"error": f"No trades for {item.upper()} in the report."},
                            status=status.HTTP_404_NOT_FOUND)

        try:
            script = generate_script(key, grouped[key], clock)
        except ValueError as e:
            logger.warning("Rejected upload: %s", e)
            return Response({"error": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        return HttpResponse(script, content_type="text/plain; charset=utf-8")
