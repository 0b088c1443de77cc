from pathlib import Path
from unittest import mock

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase, override_settings
from rest_framework.test import APIRequestFactory

from analytics.trades import Trade

from .schemas import CONVERT_RESPONSE_KEYS, ITEM_KEYS
from .views import ConvertReportAPIView, ItemScriptAPIView

DATASETS_DIR = Path(__file__).resolve().parents[2] / "trading_datasets"

BROKEN_TIME_REPORT = b"""<html><body><table>
<tr><td colspan=13>Closed Transactions:</td></tr>
<tr><td>1</td><td>10/01/2024 10:00</td><td>buy</td><td>0.10</td><td>eurusd</td><td>1.1</td><td>0</td><td>0</td>
<td>2024.01.10 11:00:00</td><td>1.2</td><td>0</td><td>0</td><td>0</td><td>5.00</td></tr>
</table></body></html>"""

BAD_CLOSE_WINNER = Trade(
    ticket="7", open_time_raw="2024.01.10 10:00:00", type="buy", size=0.1, item="eurusd",
    open_price=1.1, close_time_raw="", close_price=1.105, profit=50.0,
)


class ConvertAPITests(SimpleTestCase):
    def setUp(self):
        self.factory = APIRequestFactory()
        self.statement = (DATASETS_DIR / "mt4_statement.htm").read_bytes()

    def _post(self, view, url, data, **kwargs):
        request = self.factory.post(url, data, format="multipart")
        return view.as_view()(request, **kwargs)

    def _upload(self, content=None, name="Statement.htm"):
        return SimpleUploadedFile(name, self.statement if content is None else content, content_type="text/html")

    def test_convert_returns_items_and_scripts(self):
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload()})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(sorted(resp.data), sorted(CONVERT_RESPONSE_KEYS))
        self.assertEqual(resp.data["n_trades"], 6)
        self.assertEqual(resp.data["tolerance"], 0.0)
        self.assertEqual(list(resp.data["items"]), ["gbpusd", "eurusd", "xauusd"])
        eur = resp.data["items"]["eurusd"]
        self.assertEqual(sorted(eur), sorted(ITEM_KEYS))
        self.assertEqual(eur["counts"], {"winners": 1, "breakeven": 0, "losers": 1})
        self.assertIn("// Winner: 100001", eur["script"])

    def test_tolerance_is_applied(self):
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload(), "tolerance": "5"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["items"]["eurusd"]["counts"], {"winners": 1, "breakeven": 1, "losers": 0})

    def test_negative_tolerance_rejected(self):
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload(), "tolerance": "-1"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("tolerance", resp.data["error"])

    def test_missing_file(self):
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"tolerance": "1"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("file", resp.data["error"])

    def test_wrong_extension(self):
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload(b"a,b", name="trades.csv")})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("Unsupported file type", resp.data["error"])

    def test_report_without_closed_trades(self):
        content = (DATASETS_DIR / "no_closed_section.htm").read_bytes()
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload(content)})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("No valid closed transactions", resp.data["error"])

    def test_report_with_only_malformed_times_has_no_trades(self):
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload(BROKEN_TIME_REPORT)})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("No valid closed transactions", resp.data["error"])

    def test_rows_with_malformed_times_are_skipped(self):
        content = (DATASETS_DIR / "malformed_times.htm").read_bytes()
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload(content)})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["n_trades"], 1)
        eur = resp.data["items"]["eurusd"]
        self.assertEqual([t["ticket"] for t in eur["winners"]], ["1"])
        self.assertEqual(eur["counts"], {"winners": 1, "breakeven": 0, "losers": 0})

    def test_malformed_close_time_is_a_400(self):
        with mock.patch("api.views.parse_report_file", return_value=[BAD_CLOSE_WINNER]):
            resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload()})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("Malformed timestamp ''", resp.data["error"])

    @override_settings(REPORT_CLOCK={"SERVER_UTC_OFFSET": 2, "TARGET_UTC_OFFSET": -6, "TARGET_TIMESTAMP_CORRECTION": 2})
    def test_clock_comes_from_settings(self):
        resp = self._post(ConvertReportAPIView, "/api/convert/", {"file": self._upload()})
        self.assertIn("label.new(timestamp(2024, 1, 10, 4, 0), 1.1", resp.data["items"]["eurusd"]["script"])


class ItemScriptAPITests(SimpleTestCase):
    def setUp(self):
        self.factory = APIRequestFactory()
        self.statement = (DATASETS_DIR / "mt4_statement.htm").read_bytes()

    def _post_item(self, item, **data):
        data.setdefault("file", SimpleUploadedFile("Statement.htm", self.statement))
        request = self.factory.post(f"/api/convert/{item}/script/", data, format="multipart")
        return ItemScriptAPIView.as_view()(request, item=item)

    def test_returns_plain_text_script(self):
        resp = self._post_item("EURUSD")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp["Content-Type"].startswith("text/plain"))
        body = resp.content.decode("utf-8")
        self.assertTrue(body.startswith("//@version=5"))
        self.assertIn('indicator("EURUSD Trades from Report"', body)

    def test_unknown_item_is_404(self):
        resp = self._post_item("usdjpy")
        self.assertEqual(resp.status_code, 404)

    def test_malformed_close_time_is_a_400(self):
        with mock.patch("api.views.parse_report_file", return_value=[BAD_CLOSE_WINNER]):
            resp = self._post_item("eurusd")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("Malformed timestamp ''", resp.data["error"])
