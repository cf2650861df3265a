"""
Rich Logging Module for Threatline.

Provides colorful, formatted logging with tables and panels.
"""

import logging
import os
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

# Custom theme for Threatline
THREATLINE_THEME = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "critical": "bold white on red",
        "success": "bold green",
        "detector": "bold magenta",
        "sink": "bold blue",
        "data": "dim cyan",
        "highlight": "bold yellow",
        "muted": "dim white",
        "header": "bold cyan",
        "border": "bright_black",
        "sev.low": "green",
        "sev.medium": "yellow",
        "sev.high": "bold red",
        "sev.critical": "bold white on red",
    }
)

# Initialize Rich console with custom theme
console = Console(theme=THREATLINE_THEME, stderr=True)


class ThreatlineLogger:
    """Custom logger with Rich formatting for Threatline."""

    def __init__(self, name: str = "threatline", level: str | None = None):
        """Initialize the logger with Rich handler."""
        self.console = console
        self.name = name

        # Set up Python logging with Rich handler
        log_level = level or os.getenv("LOG_LEVEL", "INFO")
        logging.basicConfig(
            level=getattr(logging, log_level.upper()),
            format="%(message)s",
            datefmt="[%X]",
            handlers=[
                RichHandler(
                    console=self.console,
                    show_time=True,
                    show_path=False,
                    rich_tracebacks=True,
                    markup=True,
                )
            ],
        )
        self._logger = logging.getLogger(name)

    def set_level(self, level: str) -> None:
        """Change the log level at runtime."""
        self._logger.setLevel(getattr(logging, level.upper()))

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message with cyan color."""
        self._logger.info(f"[info]{message}[/info]", **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message with yellow color."""
        self._logger.warning(f"[warning]⚠️  {message}[/warning]", **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message with red color."""
        self._logger.error(f"[error]❌ {message}[/error]", **kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        """Log critical message with white on red background."""
        self._logger.critical(f"[critical]🚨 {message}[/critical]", **kwargs)

    def success(self, message: str) -> None:
        """Log success message with green color."""
        self.console.print(f"[success]✅ {message}[/success]")

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message."""
        self._logger.debug(f"[muted]{message}[/muted]", **kwargs)

    def detector_fault(self, detector_id: str, reason: str) -> None:
        """Log an isolated detector failure."""
        self._logger.error(
            f"[detector]🧩 DETECTOR FAULT:[/detector] [bold]{detector_id}[/bold] "
            f"[data]{reason}[/data]"
        )

    def incident(self, incident_id: str, severity: str, summary: str) -> None:
        """Log an incident lifecycle event with a severity-coloured tag."""
        self.console.print(
            f"[sev.{severity}]🚨 {severity.upper()}[/sev.{severity}] "
            f"[bold]{incident_id}[/bold] {summary}"
        )

    def dispatch(self, sink: str, incident_id: str, attempt: int, ok: bool) -> None:
        """Log a delivery attempt to a notification sink."""
        icon = "✅" if ok else "❌"
        style = "success" if ok else "error"
        self.console.print(
            f"[sink]📤 SINK:[/sink] [bold]{sink}[/bold] → [data]{incident_id}[/data] "
            f"[{style}]{icon} attempt {attempt}[/{style}]"
        )

    def panel(
        self,
        content: str,
        title: str = "",
        style: str = "border",
        subtitle: str | None = None,
    ) -> None:
        """Display content in a styled panel."""
        self.console.print(
            Panel(
                content,
                title=f"[header]{title}[/header]" if title else None,
                subtitle=f"[muted]{subtitle}[/muted]" if subtitle else None,
                border_style=style,
                padding=(1, 2),
            )
        )

    def table(
        self,
        title: str,
        columns: list[str],
        rows: list[list[Any]],
        show_lines: bool = False,
    ) -> None:
        """Display data in a formatted table."""
        table = Table(
            title=f"[header]{title}[/header]",
            show_header=True,
            header_style="bold cyan",
            border_style="border",
            show_lines=show_lines,
        )

        for col in columns:
            table.add_column(col)

        for row in rows:
            table.add_row(*[str(cell) for cell in row])

        self.console.print(table)

    def stats_summary(self, title: str, stats: dict[str, Any]) -> None:
        """Display a panel of counters."""
        lines = [f"  • {key}: [highlight]{value}[/highlight]" for key, value in stats.items()]
        self.panel(
            "\n".join(lines) if lines else "[muted]no data[/muted]",
            title=f"📊 {title}",
            subtitle=datetime.now().strftime("%H:%M:%S"),
        )


# Global logger instance
_logger: ThreatlineLogger | None = None


def get_logger() -> ThreatlineLogger:
    """Get or create the global logger instance."""
    global _logger
    if _logger is None:
        _logger = ThreatlineLogger()
    return _logger


def log_result_table(
    title: str,
    columns: list[str],
    rows: list[list[Any]],
) -> None:
    """Display results in a table."""
    get_logger().table(title, columns, rows)


def log_startup_banner() -> None:
    """Display the startup banner."""
    logger = get_logger()

    banner = """
╔═══════════════════════════════════════════════════════════════╗
║                                                               ║
║    ████████╗██╗  ██╗██████╗ ███████╗ █████╗ ████████╗         ║
║    ╚══██╔══╝██║  ██║██╔══██╗██╔════╝██╔══██╗╚══██╔══╝         ║
║       ██║   ███████║██████╔╝█████╗  ███████║   ██║            ║
║       ██║   ██╔══██║██╔══██╗██╔══╝  ██╔══██║   ██║            ║
║       ██║   ██║  ██║██║  ██║███████╗██║  ██║   ██║   LINE     ║
║       ╚═╝   ╚═╝  ╚═╝╚═╝  ╚═╝╚══════╝╚═╝  ╚═╝   ╚═╝            ║
║                                                               ║
║       🛡️  Threat Detection & Event Correlation Engine 🔗        ║
║                                                               ║
╚═══════════════════════════════════════════════════════════════╝
    """

    logger.console.print(f"[bold cyan]{banner}[/bold cyan]")


def log_config_status(configs: dict[str, tuple[bool, str]]) -> None:
    """Display configuration status.

    Args:
        configs: Dict of config_name -> (is_set, description)
    """
    logger = get_logger()

    table = Table(
        title="[header]⚙️ Configuration Status[/header]",
        show_header=True,
        header_style="bold cyan",
        border_style="border",
    )

    table.add_column("Config", style="bold")
    table.add_column("Status")
    table.add_column("Description", style="dim")

    for name, (is_set, description) in configs.items():
        status = "[success]✅ Set[/success]" if is_set else "[warning]⚠️ Not Set[/warning]"
        table.add_row(name, status, description)

    logger.console.print(table)
