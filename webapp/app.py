import logging
import threading

from flask import Flask, abort, jsonify, render_template_string, request

from authwatch.clients import TimeSpan
from authwatch.engine import PivotDetails

INDEX_HTML = '''
<!doctype html>
<html>
<head>
  <meta charset="utf-8">
  <title>Authentication Review</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.0/dist/css/bootstrap.min.css" rel="stylesheet">
</head>
<body class="p-4">
<div class="container">
  <h1>Authentication Review</h1>
  {% if running %}<p>Scanning... {{ '%d' % (progress * 100) }}%</p>{% endif %}
  <table class="table table-sm">
    <thead><tr><th>Account</th><th>Score</th><th>Flagged for</th><th>Home</th><th>Investigated</th></tr></thead>
    <tbody>
    {% for a in accounts %}
      <tr><td>{{a.name|e}}</td><td>{{a.score}}</td><td>{{a.reasons|join(', ')}}</td><td>{{(a.location or '')|e}}</td><td>{{'yes' if a.investigated else ''}}</td></tr>
    {% endfor %}
    </tbody>
  </table>
</div>
</body>
</html>
'''


def create_app(engine):
    app = Flask(__name__)
    state = {'scan': None}
    lock = threading.Lock()

    def scan_state():
        with lock:
            future = state['scan']
        if future is None:
            return {'running': False, 'progress': 0.0, 'accounts': []}
        if not future.done():
            return {'running': True, 'progress': engine.progress, 'accounts': []}
        return {'running': False, 'progress': 1.0, 'accounts': [a.to_dict() for a in future.result()]}

    @app.route('/')
    def index():
        s = scan_state()
        return render_template_string(INDEX_HTML, **s)

    @app.route('/api/scan', methods=['POST'])
    def start_scan():
        start, end = request.args.get('start'), request.args.get('end')
        if not start or not end:
            abort(400)
        try:
            span = TimeSpan.from_strings(start, end)
        except (ValueError, OverflowError):
            abort(400)
        with lock:
            if state['scan'] is not None and not state['scan'].done():
                return jsonify({'error': 'scan already running'}), 409
            state['scan'] = engine.run_scan(span)
        return jsonify({'running': True}), 202

    @app.route('/api/scan')
    def get_scan():
        return jsonify(scan_state())

    @app.route('/api/accounts/<name>')
    def account(name):
        days = request.args.get('days', 7, type=int)
        found = engine.run_lookup(name, days).result()
        if found is None:
            abort(404)
        return jsonify(found.to_dict(all_records=True))

    @app.route('/api/accounts/<name>/history')
    def history(name):
        days = request.args.get('days', 30, type=int)
        records = engine.more_records(name, days).result()
        if records is None:
            abort(404)
        return jsonify([r.to_dict() for r in records])

    @app.route('/api/pivot/<value>')
    def pivot(value):
        details = engine.run_pivot(value, PivotDetails()).result()
        return jsonify(details.snapshot())

    @app.route('/api/vpn/<name>')
    def vpn(name):
        records = engine.run_vpn(name).result()
        if records is None:
            abort(404)
        return jsonify([r.to_dict() for r in records])

    @app.route('/api/investigated/<name>', methods=['POST', 'DELETE'])
    def investigated(name):
        engine.mark_investigated(name, request.method == 'POST')
        return jsonify({'name': name, 'investigated': engine.investigated(name)})

    @app.route('/api/threat/<ip>')
    def threat(ip):
        try:
            found = engine.get_threat(ip)
        except ValueError:
            abort(400)
        if found is None:
            abort(404)
        return jsonify(found.to_dict())

    return app


if __name__ == '__main__':
    from authwatch.main import build_engine
    from authwatch.clients import ES_HOST
    from authwatch.storage import CACHE_PATH

    logging.basicConfig(level=logging.INFO)
    app = create_app(build_engine(ES_HOST, CACHE_PATH))
    app.run(host='0.0.0.0', port=5000, debug=False)
