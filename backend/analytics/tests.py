import io
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import CommandError, call_command
from django.test import SimpleTestCase, override_settings

from . import parser as report_parser
from .classifier import classify_trades, dedupe_winners, sort_by_open
from .parser import iter_closed_rows, parse_report, parse_report_file, row_to_trade
from .pine import Comment, Label, Line, build_statements, generate_script
from .summary import summarize_groups
from .timekeeping import (
    ClockConfig,
    DisplayTimestamp,
    MalformedTimestamp,
    clock_from_settings,
    to_absolute_instant,
    to_display,
)
from .trades import Trade, TradeGroups

DATASETS_DIR = Path(__file__).resolve().parents[2] / "trading_datasets"


def make_trade(**overrides) -> Trade:
    fields = dict(
        ticket="100001",
        open_time_raw="2024.01.10 10:00:00",
        type="buy",
        size=0.1,
        item="eurusd",
        open_price=1.1,
        close_time_raw="2024.01.10 11:00:00",
        close_price=1.105,
        profit=50.0,
    )
    fields.update(overrides)
    return Trade(**fields)


def tickets(trades):
    return [t.ticket for t in trades]


def row_cells(**overrides):
    cells = ["100001", "2024.01.10 10:00:00", "buy", "0.10", "eurusd", "1.10000", "0", "0",
             "2024.01.10 11:00:00", "1.10500", "0.00", "0.00", "0.00", "50.00"]
    index = {"ticket": 0, "open_time_raw": 1, "type": 2, "size": 3, "item": 4, "open_price": 5,
             "close_time_raw": 8, "close_price": 9, "profit": 13}
    for k, v in overrides.items():
        cells[index[k]] = v
    return cells


class ReportFixtureMixin:
    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.statement_html = (DATASETS_DIR / "mt4_statement.htm").read_text(encoding="cp1252")

    def _load_trades(self):
        return parse_report(self.statement_html)


class TimekeepingTests(SimpleTestCase):
    def test_absolute_instant_removes_server_offset(self):
        self.assertEqual(
            to_absolute_instant("2024.01.10 10:00:00"),
            datetime(2024, 1, 10, 7, 0, tzinfo=timezone.utc),
        )

    def test_display_applies_target_offset_and_correction(self):
        # 10:00 server (UTC+3) -> 07:00 UTC -> -6 +2 -> 03:00
        self.assertEqual(to_display("2024.01.10 10:00:00"), DisplayTimestamp(2024, 1, 10, 3, 0))

    def test_display_rolls_back_over_month_and_leap_day(self):
        self.assertEqual(to_display("2024.03.01 05:00:00"), DisplayTimestamp(2024, 2, 29, 22, 0))

    def test_display_keeps_minutes(self):
        self.assertEqual(to_display("2024.01.11 02:15:59"), DisplayTimestamp(2024, 1, 10, 19, 15))

    def test_server_offset_shift_moves_display_back(self):
        base = to_display("2024.06.15 12:30:00")
        shifted = to_display("2024.06.15 12:30:00", ClockConfig(server_utc_offset=4))
        self.assertEqual(base, DisplayTimestamp(2024, 6, 15, 5, 30))
        self.assertEqual(shifted, DisplayTimestamp(2024, 6, 15, 4, 30))

    def test_target_offset_shift_moves_display_forward(self):
        shifted = to_display("2024.06.15 12:30:00", ClockConfig(target_utc_offset=-5))
        self.assertEqual(shifted, DisplayTimestamp(2024, 6, 15, 6, 30))

    def test_malformed_timestamps_raise_with_raw_value(self):
        for raw in ["", "2024-01-10 10:00:00", "2024.01.10 10:00", "2024.13.01 00:00:00",
                    "2024.01.10 10:00:00\n", "now"]:
            with self.subTest(raw=raw):
                with self.assertRaises(MalformedTimestamp) as ctx:
                    to_absolute_instant(raw)
                self.assertEqual(ctx.exception.raw, raw)
                self.assertIsInstance(ctx.exception, ValueError)

    @override_settings(REPORT_CLOCK={"SERVER_UTC_OFFSET": 2})
    def test_clock_from_settings_falls_back_to_defaults(self):
        self.assertEqual(clock_from_settings(), ClockConfig(2.0, -6.0, 2.0))

    def test_clock_from_settings_defaults(self):
        self.assertEqual(clock_from_settings(), ClockConfig())


class ParserTests(ReportFixtureMixin, SimpleTestCase):
    def test_extracts_closed_buy_sell_rows_in_document_order(self):
        trades = self._load_trades()
        self.assertEqual(tickets(trades), ["100001", "100002", "100003", "100004", "100005", "100006"])

    def test_first_trade_fields(self):
        self.assertEqual(self._load_trades()[0], make_trade())

    def test_item_is_lowercased_and_thousands_spaces_dropped(self):
        gold = self._load_trades()[4]
        self.assertEqual(gold.item, "xauusd")
        self.assertEqual(gold.profit, 1234.0)
        self.assertEqual(gold.open_price, 2020.5)

    def test_rows_after_open_trades_marker_are_ignored(self):
        found = tickets(self._load_trades())
        self.assertNotIn("200001", found)
        self.assertNotIn("300001", found)

    def test_pending_balance_and_empty_item_rows_are_skipped(self):
        found = tickets(self._load_trades())
        for ticket in ["100007", "100008", "99999", "Ticket"]:
            self.assertNotIn(ticket, found)

    def test_report_without_closed_section_is_empty(self):
        html = (DATASETS_DIR / "no_closed_section.htm").read_text()
        self.assertEqual(parse_report(html), [])
        self.assertEqual(parse_report("<html><body><p>nothing</p></body></html>"), [])

    def test_section_rows_are_yielded_until_end_marker(self):
        html = """<table>
            <tr><td>before</td></tr>
            <tr><td><b>Closed Transactions:</b></td></tr>
            <tr><td>a</td><td>b</td></tr>
            <tr><td>Working Orders:</td></tr>
            <tr><td>after</td></tr>
        </table>"""
        self.assertEqual(list(iter_closed_rows(html)), [["a", "b"]])

    def test_row_shape_and_side_checks(self):
        self.assertIsNone(row_to_trade(row_cells()[:13]))
        self.assertIsNone(row_to_trade(row_cells(type="Type")))
        self.assertIsNone(row_to_trade(row_cells(type="sell stop")))
        self.assertIsNone(row_to_trade(row_cells(item="  ")))
        self.assertEqual(row_to_trade(row_cells(type=" SELL ")).type, "sell")

    def test_unparseable_numbers_degrade_to_zero(self):
        trade = row_to_trade(row_cells(size="n/a", open_price="", close_price="-", profit="x1"))
        self.assertEqual((trade.size, trade.open_price, trade.close_price, trade.profit), (0.0, 0.0, 0.0, 0.0))

    def test_row_errors_are_logged_and_skipped(self):
        real = report_parser.row_to_trade

        def flaky(cells):
            if cells and cells[0].strip() == "100002":
                raise ValueError("boom")
            return real(cells)

        with mock.patch.object(report_parser, "row_to_trade", side_effect=flaky):
            with self.assertLogs("analytics.parser", level="WARNING") as logs:
                trades = parse_report(self.statement_html)

        self.assertNotIn("100002", tickets(trades))
        self.assertEqual(len(trades), 5)
        self.assertIn("boom", logs.output[0])

    def test_parse_report_file_decodes_utf16_uploads(self):
        upload = SimpleUploadedFile("Statement.htm", self.statement_html.encode("utf-16"))
        self.assertEqual(len(parse_report_file(upload)), 6)

    def test_parse_report_file_rejects_other_extensions(self):
        with self.assertRaises(ValueError):
            parse_report_file(SimpleUploadedFile("trades.csv", b"a,b,c"))

    def test_non_finite_numbers_degrade_to_zero(self):
        trade = row_to_trade(row_cells(open_price="inf", close_price="-Infinity", profit="nan"))
        self.assertEqual((trade.open_price, trade.close_price, trade.profit), (0.0, 0.0, 0.0))

    def test_row_with_malformed_time_raises(self):
        for overrides in [{"open_time_raw": "garbage"}, {"close_time_raw": ""}, {"close_time_raw": "2024.02.30 10:00:00"}]:
            with self.subTest(**overrides):
                with self.assertRaises(MalformedTimestamp):
                    row_to_trade(row_cells(**overrides))

    def test_rows_with_malformed_times_are_skipped_not_fatal(self):
        html = (DATASETS_DIR / "malformed_times.htm").read_text()
        with self.assertLogs("analytics.parser", level="WARNING") as logs:
            trades = parse_report(html)

        self.assertEqual(tickets(trades), ["1"])
        self.assertEqual(len(logs.output), 2)
        self.assertIn("garbage", logs.output[1])
        grouped = classify_trades(trades)
        self.assertEqual(tickets(grouped["eurusd"].winners), ["1"])
        self.assertEqual(generate_script("eurusd", grouped["eurusd"]).count("label.new("), 2)


class ClassifierTests(ReportFixtureMixin, SimpleTestCase):
    def test_fixture_groups_with_zero_tolerance(self):
        grouped = classify_trades(self._load_trades(), 0)

        self.assertEqual(list(grouped), ["gbpusd", "eurusd", "xauusd"])
        self.assertEqual(tickets(grouped["eurusd"].winners), ["100001"])
        self.assertEqual(tickets(grouped["eurusd"].breakeven), [])
        self.assertEqual(tickets(grouped["eurusd"].losers), ["100003"])
        self.assertEqual(tickets(grouped["gbpusd"].breakeven), ["100006"])
        self.assertEqual(tickets(grouped["gbpusd"].losers), ["100004"])
        self.assertEqual(tickets(grouped["xauusd"].winners), ["100005"])

    def test_tolerance_moves_small_loss_to_breakeven(self):
        grouped = classify_trades(self._load_trades(), 5.0)
        self.assertEqual(tickets(grouped["eurusd"].breakeven), ["100003"])
        self.assertEqual(grouped["eurusd"].losers, [])

    def test_tolerance_boundary_is_breakeven(self):
        trades = [
            make_trade(ticket="1", profit=5.0),
            make_trade(ticket="2", profit=-5.0, open_price=1.2),
            make_trade(ticket="3", profit=5.01, open_price=1.3),
            make_trade(ticket="4", profit=-5.01, open_price=1.4),
        ]
        groups = classify_trades(trades, 5.0)["eurusd"]
        self.assertEqual(tickets(groups.breakeven), ["1", "2"])
        self.assertEqual(tickets(groups.winners), ["3"])
        self.assertEqual(tickets(groups.losers), ["4"])

    def test_buckets_partition_the_input(self):
        trades = [
            make_trade(ticket=str(i), item=item, profit=profit,
                       open_time_raw=f"2024.02.{i + 1:02d} 08:00:00", open_price=1.0 + i)
            for i, (item, profit) in enumerate(
                [("eurusd", 12.0), ("eurusd", -0.5), ("gbpusd", 0.0), ("gbpusd", -40.0), ("eurusd", 3.0)]
            )
        ]
        for tolerance in (0.0, 1.0, 5.0, 100.0):
            with self.subTest(tolerance=tolerance):
                grouped = classify_trades(trades, tolerance)
                seen = []
                for item, groups in grouped.items():
                    for bucket in (groups.winners, groups.breakeven, groups.losers):
                        self.assertTrue(all(t.item == item for t in bucket))
                        seen += tickets(bucket)
                self.assertEqual(sorted(seen), sorted(tickets(trades)))

    def test_duplicate_winners_keep_highest_profit(self):
        low = make_trade(ticket="a", profit=10.0)
        high = make_trade(ticket="b", profit=15.0, close_time_raw="2024.01.10 12:00:00")
        self.assertEqual(dedupe_winners([low, high]), [high])
        self.assertEqual(tickets(classify_trades([low, high])["eurusd"].winners), ["b"])

    def test_duplicate_winners_with_equal_profit_keep_first(self):
        first = make_trade(ticket="a")
        second = make_trade(ticket="b")
        self.assertEqual(dedupe_winners([first, second]), [first])

    def test_dedupe_is_idempotent(self):
        winners = classify_trades(self._load_trades())["eurusd"].winners
        self.assertEqual(dedupe_winners(dedupe_winners(winners)), dedupe_winners(winners))

    def test_dedupe_needs_same_time_and_price(self):
        a = make_trade(ticket="a")
        b = make_trade(ticket="b", open_price=1.1001)
        c = make_trade(ticket="c", open_time_raw="2024.01.10 10:00:01")
        self.assertEqual(tickets(dedupe_winners([a, b, c])), ["a", "b", "c"])

    def test_losers_and_breakeven_are_not_deduplicated(self):
        trades = [
            make_trade(ticket="l1", profit=-10.0),
            make_trade(ticket="l2", profit=-20.0),
            make_trade(ticket="b1", profit=0.0),
            make_trade(ticket="b2", profit=0.0),
        ]
        groups = classify_trades(trades)["eurusd"]
        self.assertEqual(tickets(groups.losers), ["l1", "l2"])
        self.assertEqual(tickets(groups.breakeven), ["b1", "b2"])

    def test_sort_is_stable_for_equal_open_times(self):
        trades = [
            make_trade(ticket="late", open_time_raw="2024.01.11 00:00:00"),
            make_trade(ticket="x"),
            make_trade(ticket="y"),
            make_trade(ticket="early", open_time_raw="2024.01.09 00:00:00"),
            make_trade(ticket="z"),
        ]
        self.assertEqual(tickets(sort_by_open(trades)), ["early", "x", "y", "z", "late"])

    def test_groups_are_sorted_by_open_instant(self):
        trades = [
            make_trade(ticket="2", open_time_raw="2024.01.12 00:00:00", profit=-3.0),
            make_trade(ticket="1", open_time_raw="2024.01.11 00:00:00", profit=-3.0),
        ]
        self.assertEqual(tickets(classify_trades(trades)["eurusd"].losers), ["1", "2"])

    def test_empty_input_gives_empty_mapping(self):
        self.assertEqual(classify_trades([]), {})
        self.assertEqual(classify_trades(parse_report("<html></html>"), 3.0), {})

    def test_negative_tolerance_rejected(self):
        with self.assertRaises(ValueError):
            classify_trades([make_trade()], -1.0)

    def test_malformed_open_time_raises(self):
        with self.assertRaises(MalformedTimestamp) as ctx:
            classify_trades([make_trade(), make_trade(ticket="2", open_time_raw="10/01/2024 10:00")])
        self.assertEqual(ctx.exception.raw, "10/01/2024 10:00")


class PineScriptTests(ReportFixtureMixin, SimpleTestCase):
    WINNER_OPEN_LABEL = (
        '    label.new(timestamp(2024, 1, 10, 3, 0), 1.1, style=label.style_diamond, '
        'color=color.new(color.green, 20), textcolor=color.green, size=iconSize, '
        'tooltip="Ticket: 100001\\nType: buy\\nProfit: 50.00", xloc=xloc.bar_time, yloc=yloc.price)'
    )
    WINNER_LINE = (
        '    line.new(timestamp(2024, 1, 10, 3, 0), 1.1, timestamp(2024, 1, 10, 4, 0), 1.105, '
        'color=color.new(color.white, 50), style=line.style_dotted, width=1, xloc=xloc.bar_time, yloc=yloc.price)'
    )

    def test_single_winner_round_trip(self):
        grouped = classify_trades([make_trade()], 0)
        self.assertEqual(list(grouped), ["eurusd"])
        self.assertEqual(grouped["eurusd"].winners, [make_trade()])

        script = generate_script("eurusd", grouped["eurusd"])
        lines = script.splitlines()
        self.assertEqual(script.count("label.new("), 2)
        self.assertEqual(script.count("line.new("), 1)
        self.assertIn("    // Winner: 100001", lines)
        self.assertIn(self.WINNER_OPEN_LABEL, lines)
        self.assertIn(self.WINNER_LINE, lines)
        self.assertTrue(script.endswith(self.WINNER_LINE + "\n"))

    def test_header(self):
        script = generate_script("eurusd", TradeGroups(winners=[make_trade()]))
        self.assertTrue(script.startswith("//@version=5\n"))
        self.assertIn('indicator("EURUSD Trades from Report", overlay=true, scale=scale.price)', script)
        self.assertIn("options=[size_tiny, size_small, size_normal, size_large, size_huge]", script)
        self.assertIn("\nif barstate.islast\n", script)

    def test_winner_statements_share_tooltip(self):
        stmts = build_statements(TradeGroups(winners=[make_trade()]))
        self.assertEqual([type(s) for s in stmts], [Comment, Label, Label, Line])
        self.assertEqual({s.tooltip for s in stmts[1:]}, {"Ticket: 100001\\nType: buy\\nProfit: 50.00"})
        self.assertEqual(stmts[2].at, DisplayTimestamp(2024, 1, 10, 4, 0))
        self.assertEqual(stmts[2].price, 1.105)

    def test_category_order_and_styles(self):
        grouped = classify_trades(self._load_trades(), 0)
        script = generate_script("eurusd", grouped["eurusd"])
        self.assertLess(script.index("// Winner: 100001"), script.index("// Loser: 100003"))
        self.assertIn("label.style_arrowdown", script)
        self.assertIn('tooltip="Ticket: 100003\\nType: sell\\nProfit: -4.00"', script)

        gbp = generate_script("gbpusd", grouped["gbpusd"])
        self.assertLess(gbp.index("// Break Even: 100006"), gbp.index("// Loser: 100004"))
        self.assertIn("style=label.style_circle, color=color.new(color.blue, 20), textcolor=color.blue", gbp)
        self.assertIn("label.new(timestamp(2024, 1, 9, 16, 30), 1.27, style=label.style_arrowdown", gbp)
        self.assertNotIn("line.new(", gbp)

    def test_buy_loser_uses_up_arrow(self):
        script = generate_script("eurusd", TradeGroups(losers=[make_trade(profit=-1.0)]))
        self.assertIn("style=label.style_arrowup, color=color.new(color.red, 20), textcolor=color.red", script)
        self.assertEqual(script.count("label.new("), 1)

    def test_output_is_deterministic(self):
        grouped = classify_trades(self._load_trades(), 0)
        self.assertEqual(generate_script("xauusd", grouped["xauusd"]), generate_script("xauusd", grouped["xauusd"]))
        self.assertIn("2020.5, style=label.style_diamond", generate_script("xauusd", grouped["xauusd"]))
        self.assertIn("Profit: 1234.00", generate_script("xauusd", grouped["xauusd"]))

    def test_clock_is_used_for_coordinates(self):
        script = generate_script("eurusd", TradeGroups(winners=[make_trade()]), ClockConfig(server_utc_offset=2))
        self.assertIn("label.new(timestamp(2024, 1, 10, 4, 0), 1.1", script)

    def test_tooltip_escapes_backslash_and_quote(self):
        trade = make_trade(ticket='a\\b"c', profit=-1.0)
        script = generate_script("eurusd", TradeGroups(losers=[trade]))
        self.assertIn('tooltip="Ticket: a\\\\b\\"c\\nType: buy\\nProfit: -1.00"', script)

    def test_winner_with_malformed_close_time_raises(self):
        with self.assertRaises(MalformedTimestamp) as ctx:
            generate_script("eurusd", TradeGroups(winners=[make_trade(close_time_raw="")]))
        self.assertEqual(ctx.exception.raw, "")


class SummaryTests(ReportFixtureMixin, SimpleTestCase):
    def test_summary_payload(self):
        summary = summarize_groups(classify_trades(self._load_trades(), 0))
        eur = summary["eurusd"]
        self.assertEqual(list(summary), ["gbpusd", "eurusd", "xauusd"])
        self.assertEqual(eur["symbol"], "EURUSD")
        self.assertEqual(eur["caption"], "EURUSD · 2 trades")
        self.assertEqual(eur["counts"], {"winners": 1, "breakeven": 0, "losers": 1})
        self.assertEqual(eur["winners"][0]["open_time"], "2024.01.10 10:00:00")
        self.assertTrue(eur["script"].startswith("//@version=5"))


class ReportCommandTests(SimpleTestCase):
    statement = str(DATASETS_DIR / "mt4_statement.htm")

    def test_prints_every_item(self):
        out = io.StringIO()
        call_command("report2pine", self.statement, stdout=out)
        text = out.getvalue()
        for symbol in ["GBPUSD", "EURUSD", "XAUUSD"]:
            self.assertIn(f'indicator("{symbol} Trades from Report"', text)

    def test_single_item_with_tolerance(self):
        out = io.StringIO()
        call_command("report2pine", self.statement, "--item", "EURUSD", "--tolerance", "5", stdout=out)
        text = out.getvalue()
        self.assertIn("// Break Even: 100003", text)
        self.assertNotIn("GBPUSD", text)

    def test_writes_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            call_command("report2pine", self.statement, "--output-dir", tmp, stdout=io.StringIO())
            written = sorted(p.name for p in Path(tmp).iterdir())
        self.assertEqual(written, ["EURUSD_trades.pine", "GBPUSD_trades.pine", "XAUUSD_trades.pine"])

    def test_errors(self):
        with self.assertRaises(CommandError):
            call_command("report2pine", "missing.htm", stdout=io.StringIO())
        with self.assertRaises(CommandError):
            call_command("report2pine", self.statement, "--item", "usdjpy", stdout=io.StringIO())
        with self.assertRaises(CommandError):
            call_command("report2pine", str(DATASETS_DIR / "no_closed_section.htm"), stdout=io.StringIO())

    def test_rows_with_malformed_times_are_left_out(self):
        out = io.StringIO()
        with self.assertLogs("analytics.parser", level="WARNING"):
            call_command("report2pine", str(DATASETS_DIR / "malformed_times.htm"), stdout=out)
        text = out.getvalue()
        self.assertIn("// Winner: 1", text)
        self.assertNotIn("// Winner: 2", text)
        self.assertNotIn("// Loser: 3", text)

    def test_malformed_close_time_is_a_command_error(self):
        bad = [make_trade(close_time_raw="")]
        with mock.patch("analytics.management.commands.report2pine.parse_report_file", return_value=bad):
            with self.assertRaises(CommandError) as ctx:
                call_command("report2pine", self.statement, stdout=io.StringIO())
        self.assertIn("Malformed timestamp ''", str(ctx.exception))
