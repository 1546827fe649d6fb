"""
Streamlit UI for STM32 USART Flasher.

Port selection, firmware upload and a guarded write button with per-stage
progress.

NOTE: This module requires the optional 'ui' extra to be installed:
    pip install -e ".[ui]"

Run with:
    streamlit run src/stm32_usart_flasher/streamlit_ui.py
"""

import sys
import tempfile
from pathlib import Path
from typing import List

try:
    import serial.tools.list_ports
except Exception:
    serial = None

# Guard streamlit import - it's an optional dependency
try:
    import streamlit as st
except ImportError as e:
    _missing = "streamlit" if "streamlit" in str(e) else str(e)
    print(
        f"\n[ERROR] Missing required package: {_missing}\n\n"
        f"The Streamlit UI requires extra dependencies.\n"
        f"Install them with:\n\n"
        f"    pip install -e \".[ui]\"\n\n"
        f"Or install streamlit directly:\n\n"
        f"    pip install streamlit\n"
    )
    sys.exit(1)

from stm32_usart_flasher.firmware import FirmwareError, load_firmware
from stm32_usart_flasher.protocol import BootloaderError, TransportError
from stm32_usart_flasher.core.safety import (
    WritePermissionError,
    create_streamlit_safety_context,
    require_write_permission,
)
from stm32_usart_flasher.core.messages import result_to_warnings, MessageLevel
from stm32_usart_flasher.core.results import OperationResult, format_region
from stm32_usart_flasher.core.actions import (
    dump_memory,
    flash_image,
    open_bootloader,
    read_device_info,
)
from stm32_usart_flasher.core.parsing import parse_address, parse_size
from stm32_usart_flasher.models import DEFAULT_FLASH_BASE

BAUD_RATES = [9600, 19200, 38400, 57600, 115200, 230400]
STAGES = ("erase", "write", "verify")


def list_serial_ports() -> List[str]:
    if serial is None:
        return []
    return [p.device for p in serial.tools.list_ports.comports()]


def _init_session_state() -> None:
    if "last_result" not in st.session_state:
        st.session_state.last_result = None
    if "device_info" not in st.session_state:
        st.session_state.device_info = None


def _render_connection() -> tuple:
    """Sidebar port/baud selector shared by every tab."""
    st.sidebar.header("Connection")
    ports = list_serial_ports()
    if ports:
        options = ports + ["[Enter manually]"]
        selected = st.sidebar.selectbox("Serial Port", options, index=0)
        port = st.sidebar.text_input("Port Path", value="") if selected == "[Enter manually]" else selected
    else:
        port = st.sidebar.text_input("Port Path", value="")
    baud = st.sidebar.selectbox("Baud", BAUD_RATES, index=BAUD_RATES.index(115200))
    ftdi = st.sidebar.checkbox("Use FTDI D2XX driver", value=False)
    reset = st.sidebar.checkbox("Reset into bootloader (RTS=BOOT0, DTR=RESET)", value=False)
    return port.strip(), int(baud), ftdi, reset


def _show_result(result: OperationResult) -> None:
    if result.ok:
        st.success(f"{result.operation} completed in {result.elapsed:.2f}s")
    else:
        st.error(f"{result.operation} failed")
    for item in result_to_warnings(result):
        show = st.error if item.level == MessageLevel.ERROR else st.warning
        show(f"[{item.code.value}] {item.title}\n\n{item.remediation}")
    data = result.to_dict()
    data["metadata"].pop("data", None)
    st.json(data)
    if result.logs:
        with st.expander("Log", expanded=False):
            st.code("\n".join(result.logs), language="text")


def tab_flash(port: str, baud: int, ftdi: bool, reset: bool) -> None:
    st.subheader("Flash Firmware")

    uploaded = st.file_uploader("Firmware (.hex or .bin)", type=["hex", "ihex", "ihx", "bin"])
    col1, col2 = st.columns(2)
    with col1:
        base_text = st.text_input("Base address (.bin only)", value=f"0x{DEFAULT_FLASH_BASE:08X}")
        mass = st.checkbox("Mass erase", value=False)
    with col2:
        verify = st.checkbox("Verify after write", value=True)
        go = st.checkbox("Jump to image after flashing", value=False)

    if uploaded is None:
        st.info("Upload a firmware file to continue.")
        return

    suffix = Path(uploaded.name).suffix or ".bin"
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        tmp.write(uploaded.getvalue())
        tmp_path = Path(tmp.name)
    try:
        base_address = parse_address(base_text)
        if base_address is None:
            base_address = DEFAULT_FLASH_BASE
        image = load_firmware(tmp_path, base_address=base_address)
    except (FirmwareError, ValueError) as e:
        st.error(str(e))
        return
    finally:
        tmp_path.unlink(missing_ok=True)

    region = format_region(image.start_address, image.end_address)
    st.caption(f"{region} · {image.size:,} bytes · sha256 {image.sha256[:16]}...")

    risk = st.checkbox("I understand this erases and rewrites the target flash")
    if not st.button("Write", type="primary", disabled=not port):
        return

    try:
        require_write_permission(
            create_streamlit_safety_context(risk),
            operation="flash",
            target_region=region,
            bytes_length=image.size,
        )
    except WritePermissionError as e:
        st.error(e.reason)
        return

    bars = {stage: st.progress(0, text=stage.capitalize()) for stage in STAGES}
    status = st.empty()

    def _progress_cb(stage: str, done: int, total: int) -> None:
        bar = bars.get(stage)
        if bar is not None:
            pct = int(done * 100 / total) if total else 100
            bar.progress(min(pct, 100), text=f"{stage.capitalize()} {done}/{total}")

    try:
        status.text("Synchronizing with bootloader...")
        loader = open_bootloader(port, baudrate=baud, ftdi=ftdi, reset=reset)
    except (BootloaderError, TransportError) as e:
        status.empty()
        st.error(f"Connection failed: {e}")
        return

    try:
        status.text("Flashing...")
        result = flash_image(
            loader,
            image,
            use_mass_erase=mass,
            verify=verify,
            go_address=image.start_address if go else None,
            progress_cb=_progress_cb,
        )
    finally:
        loader.close()

    status.text(f"Elapsed {result.elapsed:.2f}s")
    st.session_state.last_result = result
    _show_result(result)


def tab_info(port: str, baud: int, ftdi: bool, reset: bool) -> None:
    st.subheader("Device Information")
    if not st.button("Query Bootloader", disabled=not port):
        if st.session_state.device_info is not None:
            _show_result(st.session_state.device_info)
        return

    try:
        loader = open_bootloader(port, baudrate=baud, ftdi=ftdi, reset=reset)
    except (BootloaderError, TransportError) as e:
        st.error(f"Connection failed: {e}")
        return
    try:
        result = read_device_info(loader)
    finally:
        loader.close()
    st.session_state.device_info = result
    _show_result(result)


def tab_read(port: str, baud: int, ftdi: bool, reset: bool) -> None:
    st.subheader("Read Memory")
    col1, col2 = st.columns(2)
    with col1:
        address_text = st.text_input("Address", value=f"0x{DEFAULT_FLASH_BASE:08X}")
    with col2:
        length_text = st.text_input("Length", value="1K")

    if not st.button("Read", disabled=not port):
        return
    try:
        address = parse_address(address_text)
        length = parse_size(length_text)
    except ValueError as e:
        st.error(str(e))
        return
    if address is None or not length:
        st.error("Address and length are required.")
        return

    progress = st.progress(0)

    def _progress_cb(stage: str, done: int, total: int) -> None:
        progress.progress(min(int(done * 100 / total), 100) if total else 100)

    try:
        loader = open_bootloader(port, baudrate=baud, ftdi=ftdi, reset=reset)
    except (BootloaderError, TransportError) as e:
        st.error(f"Connection failed: {e}")
        return
    try:
        result = dump_memory(loader, address, length, progress_cb=_progress_cb)
    finally:
        loader.close()

    _show_result(result)
    if result.ok:
        st.download_button(
            "Download",
            data=result.metadata["data"],
            file_name=f"dump_{address:08X}_{length}.bin",
            mime="application/octet-stream",
        )


def main():
    """Streamlit app main."""
    st.set_page_config(
        page_title="STM32 USART Flasher",
        page_icon="🔧",
        layout="centered",
    )
    _init_session_state()

    st.title("STM32 USART Flasher")
    st.caption("Hold BOOT0 high and reset the target, or enable the reset option.")

    port, baud, ftdi, reset = _render_connection()
    flash_tab, info_tab, read_tab = st.tabs(["Flash", "Device Info", "Read"])
    with flash_tab:
        tab_flash(port, baud, ftdi, reset)
    with info_tab:
        tab_info(port, baud, ftdi, reset)
    with read_tab:
        tab_read(port, baud, ftdi, reset)


if __name__ == "__main__":
    main()
