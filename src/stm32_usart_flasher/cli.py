"""
STM32 USART Flasher CLI

Command-line interface for the STM32 system-memory bootloader.
"""

import sys
import logging
import json
from pathlib import Path
from typing import Callable, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn

from stm32_usart_flasher.firmware import FirmwareError, load_firmware
from stm32_usart_flasher.protocol import (
    BootloaderError,
    CbusBits,
    CbusConfig,
    CBUS_IOMODE,
    Ft232rTransport,
    TransportError,
    USARTBootloader,
)
from stm32_usart_flasher.protocol.transport import DEFAULT_BAUDRATE

from stm32_usart_flasher.core.parsing import (
    parse_address as _parse_address_core,
    parse_size as _parse_size_core,
    parse_erase_selector as _parse_erase_selector_core,
)
from stm32_usart_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    WritePermissionError,
    create_cli_safety_context,
    require_write_permission,
)
from stm32_usart_flasher.core.results import OperationResult, format_region
from stm32_usart_flasher.core.actions import (
    BLOCK_SIZE,
    VERIFY_ATTEMPTS,
    dump_memory,
    erase_flash,
    exit_bootloader,
    flash_image,
    open_bootloader,
    read_device_info,
    start_application,
)
from stm32_usart_flasher.core.messages import (
    WarningItem,
    MessageLevel,
    result_to_warnings,
)
from stm32_usart_flasher.models import DEFAULT_FLASH_BASE, list_targets

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("stm32_usart_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="🔧 STM32 USART Flasher - program STM32 parts over the system bootloader")


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every frame (DEBUG)"),
) -> None:
    """Global options."""
    if verbose:
        logger.setLevel(logging.DEBUG)


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = True) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style, markup=False)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult, verbose: bool = True) -> None:
    """Print all warnings from an OperationResult using structured format."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def parse_address(value: Optional[str]) -> Optional[int]:
    """CLI wrapper around core.parsing.parse_address."""
    try:
        return _parse_address_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_size(value: Optional[str]) -> Optional[int]:
    """CLI wrapper around core.parsing.parse_size."""
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_erase_selector(value: str, extended: bool = False) -> int:
    """CLI wrapper around core.parsing.parse_erase_selector."""
    try:
        return _parse_erase_selector_core(value, extended=extended)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_pins(value: Optional[str]) -> List[int]:
    """Parse a comma separated CBUS pin list such as "0,2"."""
    if not value:
        return []
    pins = []
    for part in value.split(","):
        part = part.strip()
        if part not in ("0", "1", "2", "3"):
            raise typer.BadParameter(f"Invalid CBUS pin '{part}'. Use 0 to 3.")
        pins.append(int(part))
    return pins


def confirm_write_with_details(
    write_flag: bool,
    operation: str,
    target_region: str,
    bytes_length: int = 0,
    confirm_token: Optional[str] = None,
) -> None:
    """
    Require explicit --write flag AND typed confirmation before any flash write.

    CLI wrapper around core.safety.require_write_permission that shows the
    details panel with Rich and prompts with typer.

    Raises:
        typer.Abort: If confirmation fails or write not permitted
    """
    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Operation:     {details.get('operation')}\n"
            f"Target:        {details.get('target_region') or 'Unknown'}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n",
            title="Flash Write Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt(prompt_text)

    ctx = create_cli_safety_context(
        write_flag,
        confirmation_token=confirm_token,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )

    try:
        require_write_permission(
            ctx,
            operation=operation,
            target_region=target_region,
            bytes_length=bytes_length,
        )
    except WritePermissionError as e:
        console.print()
        print_error(e.reason)
        if not write_flag:
            console.print("This is a safety measure to prevent accidental erase of your target.")
            console.print()
            console.print(f"  Operation:     {operation}")
            console.print(f"  Target:        {target_region or 'Unknown'}")
            if bytes_length:
                console.print(f"  Bytes:         {bytes_length:,}")
        elif not ctx.interactive and confirm_token is None:
            console.print()
            console.print("[bold]For scripted/non-interactive use, provide:[/bold]")
            console.print(f"  --write --confirm {CONFIRMATION_TOKEN}")
        raise typer.Abort()

    print_success("Confirmation accepted. Proceeding with write...")


def connect(
    port: str,
    baud: int,
    ftdi: bool,
    reset: bool,
    attempts: int = 5,
    legacy_extended_erase: bool = False,
) -> USARTBootloader:
    """Open the port and synchronize, exiting with status 1 on failure."""
    console.print(f"Port: {port} @ {baud} bps" + (" (D2XX)" if ftdi else ""))
    try:
        with console.status("Synchronizing with bootloader..."):
            loader = open_bootloader(
                port,
                baudrate=baud,
                ftdi=ftdi,
                reset=reset,
                init_attempts=attempts,
                legacy_extended_erase=legacy_extended_erase,
            )
    except (BootloaderError, TransportError) as e:
        print_error(f"Connection failed: {e}")
        sys.exit(1)
    print_success("Bootloader synchronized")
    return loader


def close_quietly(loader: USARTBootloader) -> None:
    try:
        loader.close()
    except TransportError as e:
        print_warning(f"Close failed: {e}")


def progress_columns():
    return (
        TextColumn("{task.description:<8}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
    )


def make_progress_callback(progress: Progress) -> Callable[[str, int, int], None]:
    """Create one progress task per stage on first report."""
    tasks = {}

    def callback(stage: str, done: int, total: int) -> None:
        if stage not in tasks:
            tasks[stage] = progress.add_task(stage.capitalize(), total=total)
        progress.update(tasks[stage], completed=done)

    return callback


def finish(result: OperationResult, output_json: bool = False) -> None:
    """Print the result and exit non-zero on failure."""
    if output_json:
        data = result.to_dict()
        data["metadata"].pop("data", None)
        console.print_json(json.dumps(data))
    else:
        console.print(result.to_summary(), markup=False)
        print_warnings_from_result(result)
    if not result.ok:
        sys.exit(1)


PortOption = typer.Option(..., "--port", "-p", help="Serial port (e.g., /dev/ttyUSB0, COM3)")
BaudOption = typer.Option(DEFAULT_BAUDRATE, "--baud", "-b", help="Baud rate")
FtdiOption = typer.Option(False, "--ftdi", help="Use the FTDI D2XX driver instead of the COM port")
ResetOption = typer.Option(False, "--reset", help="Pulse RESET with BOOT0 high (DTR=RESET, RTS=BOOT0)")


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    try:
        import serial.tools.list_ports

        ports_list = list(serial.tools.list_ports.comports())

        if not ports_list:
            print_warning("No serial ports found")
            return

        table = Table(title="Serial Ports")
        table.add_column("Port", style="cyan")
        table.add_column("Device", style="magenta")
        table.add_column("Description", style="green")

        for port in ports_list:
            table.add_row(port.device, port.name or "-", port.description or "-")

        console.print(table)
    except ImportError:
        print_error("pyserial not installed: pip install pyserial")


@app.command()
def targets() -> None:
    """List known product IDs and their flash page sizes."""
    print_header("Known Targets")

    table = Table(title="Product IDs")
    table.add_column("PID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Page Size", style="magenta")
    for target in list_targets():
        table.add_row(f"0x{target.product_id:03X}", target.name, f"{target.page_size:,}")
    console.print(table)


@app.command()
def info(
    port: str = PortOption,
    baud: int = BaudOption,
    ftdi: bool = FtdiOption,
    reset: bool = ResetOption,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show bootloader version, commands, option bytes and chip ID."""
    print_header("Bootloader Information")

    loader = connect(port, baud, ftdi, reset)
    try:
        result = read_device_info(loader)
    finally:
        close_quietly(loader)

    if output_json or not result.ok:
        finish(result, output_json=output_json)
        return

    meta = result.metadata
    table = Table(title="Device Information")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Bootloader", meta["version"])
    if "product_id" in meta:
        table.add_row("Product ID", f"0x{meta['product_id']:03X}")
        table.add_row("Chip", result.target)
    if meta.get("page_size"):
        table.add_row("Page Size", f"{meta['page_size']:,} bytes")
    if "option_byte1" in meta:
        table.add_row("Option Bytes", f"0x{meta['option_byte1']:02X} 0x{meta['option_byte2']:02X}")
    table.add_row("Commands", "\n".join(meta["commands"]))
    console.print(table)
    print_warnings_from_result(result)


@app.command()
def read(
    port: str = PortOption,
    address: str = typer.Option(
        hex(DEFAULT_FLASH_BASE), "--address", "-a",
        help="Start address: decimal, hex (0x08000000), or suffix (8000000h)",
    ),
    length: str = typer.Option(..., "--length", "-l", help="Bytes to read (e.g., 256, 0x400, 64K)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Save to file"),
    baud: int = BaudOption,
    ftdi: bool = FtdiOption,
    reset: bool = ResetOption,
) -> None:
    """Read memory and save it to a file (or print a hex dump)."""
    print_header("Read Memory")

    start = parse_address(address)
    size = parse_size(length)
    if not size:
        print_error("Length must be greater than zero")
        sys.exit(1)
    console.print(f"Region: {format_region(start, start + size)}")

    loader = connect(port, baud, ftdi, reset)
    try:
        with Progress(*progress_columns(), console=console) as progress:
            result = dump_memory(
                loader, start, size, progress_cb=make_progress_callback(progress)
            )
    finally:
        close_quietly(loader)

    if result.ok:
        data = result.metadata["data"]
        if output:
            Path(output).write_bytes(data)
            print_success(f"Saved {len(data):,} bytes to {output}")
        else:
            for offset in range(0, min(len(data), 256), 16):
                row = data[offset:offset + 16]
                console.print(f"{start + offset:08X}  {row.hex(' ').upper()}", markup=False)
            if len(data) > 256:
                console.print(f"[dim]... {len(data) - 256:,} more bytes (use --output)[/dim]")
    finish(result)


@app.command()
def erase(
    selector: str = typer.Argument(
        ..., help="Page index, 'all' (global), or with --extended: 'mass', 'bank1', 'bank2', page count"
    ),
    port: str = PortOption,
    extended: bool = typer.Option(False, "--extended", "-x", help="Use Extended Erase (0x44)"),
    legacy_split: bool = typer.Option(
        False, "--legacy-split", help="Encode extended page counts with the old (n>>4, n&0xFF) split"
    ),
    baud: int = BaudOption,
    ftdi: bool = FtdiOption,
    reset: bool = ResetOption,
    write: bool = typer.Option(False, "--write", help="Required flag to enable erasing flash"),
    confirm: Optional[str] = typer.Option(
        None, "--confirm", help=f"Non-interactive confirmation token (must be '{CONFIRMATION_TOKEN}')"
    ),
) -> None:
    """Erase flash pages, a bank, or the whole device."""
    print_header("Erase Flash")

    value = parse_erase_selector(selector, extended=extended)
    description = f"{'extended' if extended else 'legacy'} erase 0x{value:X}"
    confirm_write_with_details(write, "erase", description, confirm_token=confirm)

    loader = connect(port, baud, ftdi, reset, legacy_extended_erase=legacy_split)
    try:
        with console.status("Erasing..."):
            result = erase_flash(loader, value, extended=extended)
    finally:
        close_quietly(loader)
    finish(result)


@app.command()
def flash(
    firmware: str = typer.Argument(..., help="Firmware file (.hex or .bin)"),
    port: str = PortOption,
    base: str = typer.Option(
        hex(DEFAULT_FLASH_BASE), "--base", help="Load address for .bin files"
    ),
    page_size: Optional[str] = typer.Option(
        None, "--page-size", help="Flash page size (default: looked up from the product ID)"
    ),
    block_size: str = typer.Option(str(BLOCK_SIZE), "--block-size", help="Bytes per write (1 to 256)"),
    mass_erase: bool = typer.Option(False, "--mass-erase", help="Erase the whole flash first"),
    no_verify: bool = typer.Option(False, "--no-verify", help="Skip read-back verification"),
    verify_attempts: int = typer.Option(VERIFY_ATTEMPTS, "--verify-attempts", help="Reads per block"),
    go: bool = typer.Option(False, "--go", help="Jump to the image start after flashing"),
    run: bool = typer.Option(False, "--run", help="Reset with BOOT0 low after flashing"),
    baud: int = BaudOption,
    ftdi: bool = FtdiOption,
    reset: bool = ResetOption,
    write: bool = typer.Option(False, "--write", help="Required flag to enable writing flash"),
    confirm: Optional[str] = typer.Option(
        None, "--confirm", help=f"Non-interactive confirmation token (must be '{CONFIRMATION_TOKEN}')"
    ),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output result as JSON"),
) -> None:
    """
    Complete workflow: erase → write → verify → (go).

    Steps:
    1. Load firmware (Intel-HEX or raw binary)
    2. Erase the pages the image covers (or mass erase)
    3. Write in blocks of up to 256 bytes
    4. Read back and compare each block
    """
    print_header("Flash Firmware")

    base_address = parse_address(base)
    page = parse_size(page_size)
    block = parse_size(block_size)
    if not block or block > 256:
        raise typer.BadParameter(f"Block size is 1 to 256. size={block_size}")

    try:
        image = load_firmware(firmware, base_address=base_address)
    except FirmwareError as e:
        print_error(str(e))
        sys.exit(1)

    region = format_region(image.start_address, image.end_address)
    console.print(f"Firmware: {firmware}")
    console.print(f"Region: {region} ({image.size:,} bytes)")
    console.print(f"SHA256: {image.sha256}")

    confirm_write_with_details(write, "flash", region, image.size, confirm_token=confirm)

    loader = connect(port, baud, ftdi, reset)
    try:
        with Progress(*progress_columns(), console=console) as progress:
            result = flash_image(
                loader,
                image,
                page_size=page,
                flash_base=DEFAULT_FLASH_BASE,
                use_mass_erase=mass_erase,
                verify=not no_verify,
                verify_attempts=verify_attempts,
                block_size=block,
                go_address=image.start_address if go else None,
                progress_cb=make_progress_callback(progress),
            )
        if run and result.ok:
            exit_bootloader(loader.transport)
            print_success("Target reset into user flash")
    finally:
        close_quietly(loader)
    finish(result, output_json=output_json)


@app.command("go")
def go_command(
    port: str = PortOption,
    address: str = typer.Option(hex(DEFAULT_FLASH_BASE), "--address", "-a", help="Jump address"),
    baud: int = BaudOption,
    ftdi: bool = FtdiOption,
    reset: bool = ResetOption,
) -> None:
    """Jump to application code."""
    print_header("Go")

    target = parse_address(address)
    loader = connect(port, baud, ftdi, reset)
    try:
        result = start_application(loader, target)
    finally:
        close_quietly(loader)
    finish(result)


@app.command()
def cbus(
    port: str = PortOption,
    io: Optional[str] = typer.Option(None, "--io", help="Pins to switch to I/O mode, e.g. '0,1'"),
    high: Optional[str] = typer.Option(None, "--high", help="I/O pins to drive high"),
    write: bool = typer.Option(False, "--write", help="Allow reprogramming the FT232R EEPROM"),
) -> None:
    """Configure and drive FT232R CBUS pins (D2XX only)."""
    print_header("FT232R CBUS")

    io_pins = parse_pins(io)
    high_pins = parse_pins(high)
    if io_pins and not write:
        print_error("Switching CBUS pins to I/O mode rewrites the EEPROM. Add --write.")
        sys.exit(1)

    transport = Ft232rTransport(port)
    try:
        transport.open()
        config = transport.read_cbus_config()
        if io_pins:
            functions = list(config.as_tuple())
            for pin in io_pins:
                functions[pin] = CBUS_IOMODE
            config = CbusConfig(*functions)
            if transport.set_cbus_config(config):
                print_warning("EEPROM updated; replug the adapter before driving the pins")
        if high is not None:
            transport.set_cbus_bits(CbusBits(*(pin in high_pins for pin in range(4))))
        state = transport.get_cbus_bits()
    except TransportError as e:
        print_error(f"CBUS operation failed: {e}")
        sys.exit(1)
    finally:
        if transport.is_open():
            transport.close()

    table = Table(title="CBUS Pins")
    table.add_column("Pin", style="cyan")
    table.add_column("Function", style="magenta")
    table.add_column("Level", style="green")
    for pin, (function, level) in enumerate(zip(config.as_tuple(), state.as_tuple())):
        name = "I/O" if function == CBUS_IOMODE else f"0x{function:02X}"
        table.add_row(f"CBUS{pin}", name, "HIGH" if level else "LOW")
    console.print(table)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
