import re
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"

_SEQ_RANGE = re.compile(r"^(\d+|\*)(?::(\d+|\*))?$")


def _unquote(value):
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def _quote(name):
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 mock server handler for testing the export.

    Supports LOGIN, AUTHENTICATE XOAUTH2, CAPABILITY, LIST, SELECT/EXAMINE,
    sequence-number FETCH of whole bodies, NOOP and LOGOUT, plus the failure
    injections configured on MockIMAPServer.
    """

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1] Mock IMAP Server Ready\r\n")
        self.selected_folder = None
        self.delivered = 0

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper()
                args = parts[2] if len(parts) > 2 else ""

                if cmd == "CAPABILITY":
                    caps = "IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2"
                    if self.server.starttls_refused:
                        caps += " STARTTLS"
                    self.wfile.write(f"* CAPABILITY {caps}\r\n".encode())
                    self.send_response(tag, "OK CAPABILITY completed")

                elif cmd == "STARTTLS":
                    self.send_response(tag, "NO TLS not available")

                elif cmd == "LOGIN":
                    user_pass = args.split(" ", 1)
                    password = _unquote(user_pass[1]) if len(user_pass) > 1 else ""
                    if self.server.password is not None and password != self.server.password:
                        self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
                        continue
                    self.server.record_login(_unquote(user_pass[0]))
                    self.send_response(tag, "OK LOGIN completed")

                elif cmd == "AUTHENTICATE":
                    self.wfile.write(b"+ \r\n")
                    self.wfile.flush()
                    self.rfile.readline()
                    self.server.record_login("xoauth2")
                    self.send_response(tag, "OK AUTHENTICATE completed")

                elif cmd == "LOGOUT":
                    self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
                    self.send_response(tag, "OK LOGOUT completed")
                    break

                elif cmd == "NOOP":
                    self.send_response(tag, "OK NOOP completed")

                elif cmd == "LIST":
                    if self.server.list_error:
                        self.send_response(tag, "NO LIST failed")
                        continue
                    delimiter = self.server.delimiter
                    for folder in self.server.folders:
                        self.wfile.write(f'* LIST (\\HasNoChildren) "{delimiter}" {_quote(folder)}\r\n'.encode())
                    self.send_response(tag, "OK LIST completed")

                elif cmd in ("SELECT", "EXAMINE"):
                    folder = _unquote(args)
                    self.server.record_select(folder)
                    busy = self.server.take_busy(folder)
                    if busy:
                        self.send_response(tag, "NO [UNAVAILABLE] Server Busy")
                        continue
                    if folder in self.server.select_failures or folder not in self.server.folders:
                        self.selected_folder = None
                        self.send_response(tag, "NO [NONEXISTENT] Folder not found")
                        continue
                    self.selected_folder = folder
                    self.delivered = 0
                    count = len(self.server.folders[folder])
                    self.wfile.write(f"* {count} EXISTS\r\n".encode())
                    self.wfile.write(b"* 0 RECENT\r\n")
                    self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
                    self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
                    mode = "READ-ONLY" if cmd == "EXAMINE" else "READ-WRITE"
                    self.send_response(tag, f"OK [{mode}] {cmd} completed")

                elif cmd == "FETCH":
                    if not self.selected_folder:
                        self.send_response(tag, RESPONSE_SELECT_FIRST)
                        continue
                    if not self.handle_fetch(tag, args):
                        break

                else:
                    self.send_response(tag, "BAD Command not recognized")

            except Exception:
                break

    def handle_fetch(self, tag, args):
        """Serves a FETCH; returns False when the connection should drop."""
        folder = self.selected_folder
        msgs = self.server.folders[folder]
        self.server.record_fetch(folder)

        msg_set = args.split(" ", 1)[0]
        match = _SEQ_RANGE.match(msg_set)
        if not match:
            self.send_response(tag, "BAD Invalid sequence set")
            return True
        start = len(msgs) if match.group(1) == "*" else int(match.group(1))
        end_raw = match.group(2) or match.group(1)
        end = len(msgs) if end_raw == "*" else int(end_raw)

        failure = self.server.fetch_failures.get(folder)
        for seq in range(start, min(end, len(msgs)) + 1):
            if failure and self.delivered >= failure[0]:
                if failure[1] == "abort":
                    self.wfile.flush()
                    return False
                self.send_response(tag, "NO Fetch failed")
                return True
            content = msgs[seq - 1]
            self.wfile.write(f"* {seq} FETCH (BODY[] {{{len(content)}}}\r\n".encode())
            self.wfile.write(content)
            self.wfile.write(b")\r\n")
            self.delivered += 1
        self.wfile.flush()
        self.send_response(tag, "OK FETCH completed")
        return True

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())
        self.wfile.flush()


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """
    In-memory IMAP server.

    folders: {name: [raw message bytes, ...]} in LIST order.
    select_failures: folder names whose SELECT/EXAMINE answers NO.
    fetch_failures: {folder: (m, "abort" | "no")} - after m messages on a
        connection, drop the connection or answer the FETCH with NO.
    busy_selects: {folder: n} - answer the first n selects with a busy NO.
    starttls_refused: advertise STARTTLS but answer it with NO.
    """

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None, **options):
        super().__init__(server_address, request_handler_class)
        self.folders = dict(initial_folders) if initial_folders is not None else {"INBOX": []}
        self.delimiter = options.get("delimiter", "/")
        self.password = options.get("password")
        self.list_error = options.get("list_error", False)
        self.select_failures = set(options.get("select_failures", ()))
        self.fetch_failures = dict(options.get("fetch_failures", {}))
        self.busy_selects = dict(options.get("busy_selects", {}))
        self.starttls_refused = options.get("starttls_refused", False)
        self.logins = []
        self.selects = []
        self.fetches = []
        self._lock = threading.Lock()

    def record_login(self, user):
        with self._lock:
            self.logins.append(user)

    def record_select(self, folder):
        with self._lock:
            self.selects.append(folder)

    def record_fetch(self, folder):
        with self._lock:
            self.fetches.append(folder)

    def take_busy(self, folder):
        with self._lock:
            remaining = self.busy_selects.get(folder, 0)
            if remaining:
                self.busy_selects[folder] = remaining - 1
            return remaining > 0


def start_server_thread(port=0, initial_folders=None, **options):
    """Starts a server in a daemon thread. Returns (server, actual_port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders, **options)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    return server, server.server_address[1]
