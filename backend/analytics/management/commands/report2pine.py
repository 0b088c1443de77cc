from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from analytics.classifier import classify_trades
from analytics.parser import parse_report_file
from analytics.pine import generate_script
from analytics.summary import NO_TRADES_MESSAGE, caption
from analytics.timekeeping import clock_from_settings


class Command(BaseCommand):
    help = "Convert an MT4 HTML statement into one Pine Script per traded item."

    def add_arguments(self, parser):
        parser.add_argument("report", help="Path to the .htm/.html statement")
        parser.add_argument("--tolerance", type=float, default=0.0, help="Break-even band around 0 profit")
        parser.add_argument("--item", help="Only this item (e.g. eurusd)")
        parser.add_argument("--output-dir", help="Write <ITEM>_trades.pine files here instead of stdout")

    def handle(self, *args, **options):
        path = Path(options["report"])
        if not path.is_file():
            raise CommandError(f"Report not found: {path}")

        clock = clock_from_settings()
        try:
            with path.open("rb") as f:
                trades = parse_report_file(f)
            grouped = classify_trades(trades, options["tolerance"], clock)
        except ValueError as e:
            raise CommandError(str(e))

        if options["item"]:
            key = options["item"].strip().lower()
            if key not in grouped:
                raise CommandError(f"No trades for {key.upper()} in the report.")
            grouped = {key: grouped[key]}

        if not grouped:
            raise CommandError(NO_TRADES_MESSAGE)

        try:
            scripts = {item: generate_script(item, groups, clock) for item, groups in grouped.items()}
        except ValueError as e:
            raise CommandError(str(e))

        out_dir = Path(options["output_dir"]) if options["output_dir"] else None
        if out_dir:
            out_dir.mkdir(parents=True, exist_ok=True)

        for item, groups in grouped.items():
            script = scripts[item]
            if out_dir:
                target = out_dir / f"{item.upper()}_trades.pine"
                target.write_text(script, encoding="utf-8")
                self.stdout.write(self.style.SUCCESS(f"{caption(item, groups)} -> {target}"))
            else:
                self.stdout.write(f"// ===== {caption(item, groups)} =====")
                self.stdout.write(script)
