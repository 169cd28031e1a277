#!/usr/bin/env python3
import os
import queue
import sys
import threading
from flask import Flask, render_template, request, Response, jsonify

import gcp2imgs
from micmac import invoke, ToolError

app = Flask(__name__)

# Path to the gcp2imgs.py script (assumed to be in the same directory)
PIPELINE_SCRIPT = os.path.abspath(os.path.join(os.path.dirname(__file__), "gcp2imgs.py"))

# Persistent storage for process logs
logs_queue = queue.Queue()

REQUIRED_FIELDS = ("image_pattern", "orientation", "gcp_file")


def get_defaults():
    """Default values of the gcp2imgs.py options, keyed like the form fields."""
    return {
        "out_dir": gcp2imgs.DEFAULT_OUT_DIR,
        "list_mode": False,
        "init_path": os.getcwd(),
        "regex": False,
        "timeout": gcp2imgs.DEFAULT_TIMEOUT,
    }


def build_args(data):
    """Turn a /run request body into gcp2imgs.py arguments."""
    args = [str(data[key]).strip() for key in REQUIRED_FIELDS]
    defaults = get_defaults()

    def is_default(key, val):
        default = defaults.get(key)
        if isinstance(default, float):
            try:
                return float(val) == default
            except ValueError:
                return False
        return val == str(default).strip()

    def add_arg(key, flag):
        val = data.get(key)
        if val is not None and str(val).strip() != "":
            val = str(val).strip()
            if not is_default(key, val):
                args.extend([flag, val])

    add_arg("out_dir", "--out")
    add_arg("init_path", "--init-path")
    add_arg("timeout", "--timeout")

    if data.get("list_mode"):
        args.append("--list")
    if data.get("regex"):
        args.append("--regex")
    return args


def run_pipeline_command(args):
    """Runs gcp2imgs.py and puts its output into the logs queue."""
    cmd = [sys.executable, PIPELINE_SCRIPT] + args
    print(f"Launching command: {' '.join(cmd)}")

    try:
        returncode = invoke(cmd, on_line=lambda line: logs_queue.put(line + "\n"))
        print(f"Process finished with code {returncode}")

        if returncode == 0:
            logs_queue.put("Success! Task completed.\n")
        else:
            logs_queue.put(f"Process exited with error code {returncode}\n")

    except ToolError as e:
        msg = f"Critical Error: {e}\n"
        print(msg)
        logs_queue.put(msg)
    finally:
        logs_queue.put("EOF\n")


@app.route("/")
def index():
    return render_template("index.html")


@app.route("/defaults")
def defaults():
    return jsonify(get_defaults())


@app.route("/run", methods=["POST"])
def run():
    data = request.get_json(silent=True) or {}
    print(f"Received run request with data: {data}")

    missing = [key for key in REQUIRED_FIELDS if not str(data.get(key) or "").strip()]
    if missing:
        return jsonify({"error": f"Missing required field(s): {', '.join(missing)}"}), 400

    args = build_args(data)

    # Final command for display
    full_command = f"{os.path.basename(sys.executable)} {os.path.basename(PIPELINE_SCRIPT)} {' '.join(args)}"

    while not logs_queue.empty():
        logs_queue.get()

    thread = threading.Thread(target=run_pipeline_command, args=(args,))
    thread.start()

    return jsonify({"status": "started", "command": full_command})


@app.route("/stream")
def stream():
    def event_stream():
        while True:
            line = logs_queue.get()
            if line.strip() == "EOF":
                yield f"data: {line}\n\n"
                break

            # SSE protocol: each line of a multi-line message must start with 'data: '
            parts = line.split('\n')
            for part in parts:
                yield f"data: {part}\n"

            # Send the double-newline to terminate the SSE message
            yield "\n"

    return Response(event_stream(), mimetype="text/event-stream")


if __name__ == "__main__":
    app.run(debug=True, port=5001)
