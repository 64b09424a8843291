"""
Flask status surface for a meshcall participant.

Starts a `CallClient`, exposes the current roster and peer sessions as JSON,
and pushes every status/session change to connected WebSocket clients. Media
rendering is left to whatever consumes these endpoints.
"""
import argparse
import json
import logging

from flask import Flask, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from meshcall import CallClient, IdentityError

logger = logging.getLogger(__name__)

app = Flask(__name__)
sock = Sock(app)

# Global CallClient, created by init_client() (see __main__ below)
call_client = None


def init_client(**kwargs):
    """Creates the global CallClient and starts its event loop."""
    global call_client
    call_client = CallClient(**kwargs)
    return call_client


def _client_or_503():
    if call_client is None:
        return None, (jsonify({"status": "error", "message": "Call client not started"}), 503)
    return call_client, None


# --- State Routes ---
@app.route('/')
@app.route('/state')
def state():
    """Returns identity, roster, sessions and errors as JSON."""
    client, error = _client_or_503()
    if error:
        return error
    return jsonify(client.snapshot())


# --- WebSocket Route ---
@sock.route('/ws')
def ws_updates(ws):
    """
    Streams change notifications to a client.

    The connection is handed to the CallClient, which sends one JSON object
    per status update or session change. Incoming frames are only used to
    answer pings.
    """
    client, error = _client_or_503()
    if error:
        ws.close()
        return
    logger.info("UI WebSocket connection established.")
    serve_ui_socket(client, ws)


def serve_ui_socket(client, ws):
    """Attaches `ws` to the client and answers pings until it closes."""
    client.set_sock(ws)
    try:
        while True:
            data = ws.receive(timeout=None)
            if data is None:
                break
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                client.post("pong", "PONG from server")
    except ConnectionClosed as e:
        logger.info(f"UI WebSocket closed: {e}")
    finally:
        client.set_sock(None)


# --- Action Routes (HTTP POST) ---
@app.route('/set-username', methods=['POST'])
def set_username_route():
    """
    Sets the display name used when registering.
    Expects JSON: {"username": "desired_username"}
    Returns 409 once the relay has registered this participant.
    """
    client, error = _client_or_503()
    if error:
        return error
    data = request.get_json(silent=True) or {}
    username = data.get('username')
    if not isinstance(username, str) or not username.strip():
        return jsonify({"status": "error", "message": "Username not provided"}), 400
    try:
        client.set_username(username)
    except IdentityError as e:
        return jsonify({"status": "error", "message": str(e)}), 409
    return jsonify({"status": "username set", "username": client.identity.display_name})


@app.route('/disconnect', methods=['POST'])
def disconnect_route():
    """Leaves the call: closes the relay connection and every peer connection."""
    client, error = _client_or_503()
    if error:
        return error
    client.disconnect()
    return jsonify({"status": "disconnecting"})


# --- Running the App ---
if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='meshcall participant')
    parser.add_argument('--port', type=int, default=5000, help='Port to run the status server on')
    parser.add_argument('--room', default=None, help='Room to join')
    parser.add_argument('--signal-url', default=None, help='Signaling relay URL')
    parser.add_argument('--username', default=None, help='Display name')
    parser.add_argument('--debug', action='store_true')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_client(room=args.room, signal_url=args.signal_url, username=args.username)
    app.run(host='0.0.0.0', port=args.port, debug=args.debug, use_reloader=False)
