import configparser
import logging
import queue
import threading
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Dict, Optional, Union
import tkinter as tk
from tkinter import filedialog, messagebox, ttk

from rdpssh_app.config import (
    CONFIG_FILE,
    SETTINGS_FILE,
    TunnelOptions,
    load_config,
    load_settings,
    save_settings,
)
from rdpssh_app.controllers.connection_controller import ConnectionController
from rdpssh_app.errors import CertificateError, InputError, RdpSshError
from rdpssh_app.tunnel import SessionResult, TunnelState

APP_NAME = "RDPSSH"
APP_VERSION = "1.0"
LOG_FILE = "app.log"
STATUS_READY = "Status: Ready"
STATUS_CONNECTED = "Status: Connected to %s"
STATUS_DISCONNECTED = "Status: Disconnected"
# Interval at which events posted by worker threads are applied to widgets
EVENT_POLL_MS = 100


def geometry_from_config(cfg: configparser.ConfigParser) -> str:
    """Return geometry string (e.g., '480x420') based on configuration values.

    Parameters
    ----------
    cfg: configparser.ConfigParser
        Parsed configuration object containing 'ui' section with 'width' and 'height'.
    """
    width = cfg.getint('ui', 'width', fallback=480)
    height = cfg.getint('ui', 'height', fallback=420)
    return f"{width}x{height}"


class RdpSshApp:
    """Connection window for the RDP-over-SSH tunnel.

    Tk widgets are only touched from the main thread. Worker threads and
    tunnel callbacks hand work to the UI through :meth:`_post`, which is
    drained periodically by :meth:`_poll_events`.
    """

    def __init__(
        self,
        root: tk.Tk,
        cfg: configparser.ConfigParser,
        settings_file: Union[str, Path] = SETTINGS_FILE,
    ) -> None:
        self.root = root
        self.cfg = cfg
        self.logger = logging.getLogger(__name__)
        self.settings_file = Path(settings_file)
        self.settings: Dict[str, str] = load_settings(self.settings_file)
        self._events: "queue.Queue[Callable[[], None]]" = queue.Queue()
        self.options = TunnelOptions.from_config(cfg)
        self.controller = ConnectionController(self.options)
        self._setup_logging()
        self._build_ui()

    def _setup_logging(self) -> None:
        """Configure logging to file and console.

        A custom handler forwards records to the activity log widget so
        tunnel progress is visible directly in the application.
        """
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(levelname)s - %(message)s",
            handlers=[
                logging.FileHandler(LOG_FILE),
                logging.StreamHandler(),
            ],
            force=True,
        )

        class UILogHandler(logging.Handler):
            """Queue log lines for the on-screen activity log."""

            def __init__(self, app: "RdpSshApp") -> None:
                super().__init__(level=logging.INFO)
                self.app = app

            def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - UI safety
                try:
                    exc_info = record.exc_info
                    exc_text = getattr(record, "exc_text", None)
                    record.exc_info = None
                    record.exc_text = None
                    message = self.format(record)
                    record.exc_info = exc_info
                    record.exc_text = exc_text
                    self.app._post(self.app._append_log, message)
                except Exception:
                    self.handleError(record)

        ui_handler = UILogHandler(self)
        ui_handler.setFormatter(
            logging.Formatter("[%(asctime)s] %(message)s", "%Y-%m-%d %H:%M:%S")
        )
        logging.getLogger().addHandler(ui_handler)

    # ------------------------------------------------------------------
    # Thread hand-off
    # ------------------------------------------------------------------
    def _post(self, func: Callable, *args) -> None:
        """Schedule ``func(*args)`` on the Tk thread. Safe from any thread."""
        self._events.put(lambda: func(*args))

    def _drain_events(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            try:
                event()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("UI event failed: %s", exc)

    def _poll_events(self) -> None:  # pragma: no cover - Tk timer
        self._drain_events()
        self.root.after(EVENT_POLL_MS, self._poll_events)

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------
    def _build_ui(self) -> None:  # pragma: no cover - GUI construction
        """Create the connection form, buttons, status line and log area."""
        self.root.protocol("WM_DELETE_WINDOW", self._on_quit)

        menubar = tk.Menu(self.root)
        file_menu = tk.Menu(menubar, tearoff=False)
        file_menu.add_command(label="Save Log", command=self._on_save_log)
        file_menu.add_command(label="Clear Log", command=self._on_clear_log)
        file_menu.add_separator()
        file_menu.add_command(
            label="Export Private Key", command=lambda: self._on_export_key(True)
        )
        file_menu.add_command(
            label="Export Public Key", command=lambda: self._on_export_key(False)
        )
        file_menu.add_separator()
        file_menu.add_command(label="Quit", command=self._on_quit)
        menubar.add_cascade(label="File", menu=file_menu)
        help_menu = tk.Menu(menubar, tearoff=False)
        help_menu.add_command(label="About", command=self._on_about)
        menubar.add_cascade(label="Help", menu=help_menu)
        self.root.config(menu=menubar)

        frame = ttk.Frame(self.root, padding=10)
        frame.pack(fill=tk.BOTH, expand=True)
        ttk.Label(
            frame, text="Connect to a remote host via RDP tunneled through SSH."
        ).grid(row=0, column=0, columnspan=3, sticky="w", pady=(0, 8))

        def add_entry(row: int, label: str, value: str = "", show: str = "") -> ttk.Entry:
            ttk.Label(frame, text=label).grid(row=row, column=0, sticky="w", pady=2)
            entry = ttk.Entry(frame, show=show)
            entry.insert(0, value)
            entry.grid(row=row, column=1, columnspan=2, sticky="ew", pady=2)
            return entry

        self.host_entry = add_entry(1, "Remote Host", self.settings["remote_host"])
        self.user_entry = add_entry(2, "SSH Username", self.settings["remote_user"])
        self.port_entry = add_entry(3, "Local Port", self.settings["local_port"])

        ttk.Label(frame, text="Certificate File").grid(row=4, column=0, sticky="w", pady=2)
        self.cert_label = ttk.Label(frame, text=self._cert_label_text())
        self.cert_label.grid(row=4, column=1, sticky="ew", pady=2)
        self.browse_button = ttk.Button(frame, text="...", width=3, command=self._on_browse)
        self.browse_button.grid(row=4, column=2, sticky="e", pady=2)

        self.password_entry = add_entry(5, "Certificate Password", show="*")

        buttons = ttk.Frame(frame)
        buttons.grid(row=6, column=0, columnspan=3, pady=10)
        self.test_button = ttk.Button(
            buttons, text="Test Connection", command=self._on_test_connection
        )
        self.test_button.pack(side=tk.LEFT, padx=10)
        self.connect_button = ttk.Button(
            buttons, text="Connect & Launch", command=self._on_connect
        )
        self.connect_button.pack(side=tk.LEFT, padx=10)

        log_frame = ttk.LabelFrame(frame, text="Activity Log")
        log_frame.grid(row=7, column=0, columnspan=3, sticky="nsew")
        self.log_text = tk.Text(log_frame, height=8, state="disabled", wrap="word")
        self.log_text.pack(fill=tk.BOTH, expand=True)

        self.status_var = tk.StringVar(value=STATUS_READY)
        ttk.Label(frame, textvariable=self.status_var).grid(
            row=8, column=0, columnspan=3, sticky="w", pady=(6, 0)
        )
        frame.columnconfigure(1, weight=1)
        frame.rowconfigure(7, weight=1)

    def _cert_label_text(self) -> str:
        path = self.settings.get("p12_path")
        return Path(path).name if path else "Select certificate file..."

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _append_log(self, message: str) -> None:
        """Append a message to the log text widget safely.

        The log area is kept read-only by toggling the widget state
        during writes. This method is a no-op if the widget is missing.
        """
        if not hasattr(self, "log_text"):
            return
        try:
            self.log_text.configure(state="normal")
            self.log_text.insert(tk.END, message + "\n")
            self.log_text.configure(state="disabled")
            self.log_text.see(tk.END)
        except tk.TclError as exc:  # pragma: no cover - widget destroyed
            self.logger.debug("Failed to append log message: %s", exc)

    def _set_status(self, message: str) -> None:
        self.status_var.set(message.replace("\n", " "))

    def _form_values(self) -> Dict[str, str]:
        return {
            "host": self.host_entry.get().strip(),
            "username": self.user_entry.get().strip(),
            "local_port": self.port_entry.get().strip(),
            "password": self.password_entry.get(),
        }

    def _set_inputs_enabled(self, enabled: bool) -> None:
        state = "normal" if enabled else "disabled"
        for widget in (
            self.host_entry,
            self.user_entry,
            self.port_entry,
            self.password_entry,
            self.browse_button,
        ):
            widget.configure(state=state)

    def _report_validation_error(self, exc: Exception) -> None:
        if isinstance(exc, CertificateError):
            self._set_status(f"Status: Invalid Cert - {exc}")
        else:
            self._set_status(f"Status: Error - {exc}")
        self.logger.error("Validation failed: %s", exc)

    def _persist_form(self, values: Dict[str, str]) -> None:
        self.settings.update(
            {
                "remote_host": values["host"],
                "remote_user": values["username"],
                "local_port": values["local_port"],
            }
        )
        save_settings(self.settings, self.settings_file)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _on_browse(self) -> None:
        filename = filedialog.askopenfilename(
            filetypes=[("PKCS#12 Certificate", "*.p12 *.pfx"), ("All files", "*.*")]
        )
        if not filename:
            return
        self.settings["p12_path"] = filename
        self.cert_label.configure(text=self._cert_label_text())
        self._set_status("Status: Certificate selected. Enter password and click Test.")
        self.logger.info("Selected certificate file: %s", filename)

    def _on_test_connection(self) -> None:
        """Validate input and run a connection test in the background."""
        self.logger.info("--- Starting Connection Test ---")
        values = self._form_values()
        self.test_button.configure(state="disabled")
        self._set_status("Status: Testing SSH connection...")

        def worker() -> None:
            try:
                result = self.controller.test_connection(
                    values["host"],
                    values["username"],
                    values["local_port"],
                    self.settings.get("p12_path"),
                    values["password"],
                )
            except RdpSshError as exc:
                self._post(self._on_test_finished, None, exc)
            else:
                self._post(self._on_test_finished, result, None)

        threading.Thread(target=worker, name="connection-test", daemon=True).start()

    def _on_test_finished(self, result: Optional[str], error: Optional[Exception]) -> None:
        if error is not None:
            if isinstance(error, (InputError, CertificateError)):
                self._report_validation_error(error)
            else:
                self.logger.error("Test failed: %s", error)
                self._set_status(f"Status: Test Failed - {error}")
        else:
            self.logger.info("Test success: %s", result)
            self._set_status(f"Status: {result}")
        self.test_button.configure(state="normal")

    def _on_connect(self) -> None:
        """Connect, or offer to disconnect when a tunnel is running."""
        if self.controller.is_active:
            if messagebox.askyesno("Disconnect", "Are you sure you want to disconnect?"):
                self.logger.info("Disconnect requested by user.")
                self.controller.disconnect()
            return

        self.logger.info("--- Initiating Connection Sequence ---")
        values = self._form_values()
        self._persist_form(values)
        self.connect_button.configure(state="disabled")
        self.test_button.configure(state="disabled")
        self._set_inputs_enabled(False)
        self._set_status("Status: Connecting...")
        try:
            handle = self.controller.connect(
                values["host"],
                values["username"],
                values["local_port"],
                self.settings.get("p12_path"),
                values["password"],
            )
        except (RdpSshError, RuntimeError) as exc:
            self._report_validation_error(exc)
            messagebox.showerror("Error", f"authentication failed: {exc}")
            self._reset_controls()
            return
        handle.ready.add_done_callback(
            lambda fut: self._post(self._on_tunnel_ready, fut, values["host"])
        )
        handle.done.add_done_callback(
            lambda fut: self._post(self._on_session_finished, fut.result())
        )

    def _on_tunnel_ready(self, future, host: str) -> None:
        if future.exception() is not None:
            return
        self._set_status(STATUS_CONNECTED % host)
        self.logger.info("Tunnel Ready. RDP Client Launched.")
        self.connect_button.configure(text="Disconnect", state="normal")

    def _on_session_finished(self, result: SessionResult) -> None:
        if result.state is TunnelState.FAILED:
            self.logger.error("Tunnel error: %s", result.error)
            self._set_status("Status: Connection Error")
            messagebox.showerror("Error", result.message)
        else:
            self._set_status(STATUS_DISCONNECTED)
        self._reset_controls()

    def _reset_controls(self) -> None:
        self.connect_button.configure(text="Connect & Launch", state="normal")
        self.test_button.configure(state="normal")
        self._set_inputs_enabled(True)

    def _on_export_key(self, private: bool) -> None:
        """Export the certificate's private or public key to a chosen file."""
        values = self._form_values()
        default_name = "id_rsa" if private else "id_rsa.pub"
        try:
            self.controller.validate_certificate(
                self.settings.get("p12_path"), values["password"]
            )
        except RdpSshError as exc:
            self._report_validation_error(exc)
            messagebox.showerror("Error", str(exc))
            return
        destination = filedialog.asksaveasfilename(initialfile=default_name)
        if not destination:
            return
        try:
            if private:
                self.controller.export_private_key(
                    self.settings.get("p12_path"), values["password"], destination
                )
            else:
                self.controller.export_public_key(
                    self.settings.get("p12_path"), values["password"], destination
                )
        except (RdpSshError, OSError) as exc:
            self.logger.exception("Key export failed: %s", exc)
            messagebox.showerror("Error", f"export failed: {exc}")
            return
        messagebox.showinfo("Export Success", "Key exported successfully.")

    def _on_save_log(self) -> None:
        filename = filedialog.asksaveasfilename(
            defaultextension=".txt", filetypes=[("Text files", "*.txt")]
        )
        if not filename:
            return
        try:
            Path(filename).write_text(self.log_text.get("1.0", tk.END), encoding="utf-8")
        except OSError as exc:
            self.logger.exception("Failed to save log: %s", exc)
            messagebox.showerror("Error", str(exc))
            return
        self.logger.info("Log saved to %s", filename)

    def _on_clear_log(self) -> None:
        if not messagebox.askyesno(
            "Clear Log", "Are you sure you want to clear the activity log?"
        ):
            return
        self.log_text.configure(state="normal")
        self.log_text.delete("1.0", tk.END)
        self.log_text.configure(state="disabled")
        self.logger.info("Log cleared.")

    def _on_about(self) -> None:  # pragma: no cover - GUI dialog
        messagebox.showinfo(
            f"{APP_NAME} {APP_VERSION}",
            "A simple RDP-over-SSH tunnel manager with certificate authentication.",
        )

    def _on_quit(self) -> None:
        if self.controller.is_active:
            if not messagebox.askyesno(
                "Active Connection",
                "A tunnel is currently active. Quitting will disconnect it. Continue?",
            ):
                return
            self.controller.disconnect()
            try:
                self.controller.wait(timeout=10)
            except FutureTimeout:
                self.logger.warning("Tunnel did not shut down within 10 seconds")
        self.root.destroy()

    def run(self) -> None:
        """Run the Tkinter main event loop."""
        self.logger.info("%s %s started", APP_NAME, APP_VERSION)
        self._poll_events()
        try:
            self.root.mainloop()
        except Exception as exc:  # Catch-all to prevent crashes
            self.logger.exception("Unexpected error: %s", exc)
            messagebox.showerror("Error", str(exc))


def main() -> None:
    """Entry point for running the application."""
    cfg = load_config(CONFIG_FILE)
    root = tk.Tk()
    root.title(cfg.get('ui', 'title', fallback=f"{APP_NAME} {APP_VERSION}"))
    root.geometry(geometry_from_config(cfg))
    try:
        app = RdpSshApp(root, cfg)
    except InputError as exc:
        messagebox.showerror("Configuration Error", str(exc))
        root.destroy()
        return
    app.run()


if __name__ == '__main__':
    main()
