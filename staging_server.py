#!/usr/bin/env python3
"""
Rail Staging Server
Flask JSON API that stores staged rail scans for the tracker clients.

Every endpoint takes ?sheet=main|alt (default main).
Changes are broadcast over Socket.IO as new-scan, deleted-scan and cleared-scans.
Run: python staging_server.py [--config config.json] [--host 0.0.0.0] [--port 5010]
"""

import argparse
import logging
from datetime import datetime
from io import BytesIO

from flask import Flask, current_app, jsonify, request, send_file
from flask_socketio import SocketIO
from openpyxl import Workbook
from openpyxl.styles import Font

import staging_db
from logging_setup import configure_logging
from rail_config import RailTrackerConfig
from staged_records import normalize_workspace


def _sheet():
    """Workspace from the query string; raises ValueError for unknown names."""
    return normalize_workspace(request.args.get('sheet') or 'main')


def _db_path():
    return current_app.config['STAGING_DB_PATH']


def build_workbook(sheet, rows):
    wb = Workbook()
    ws = wb.active
    ws.title = f"Staged {sheet}"
    ws.append([label for label, _key in staging_db.EXPORT_COLUMNS])
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in rows:
        ws.append([row.get(key, '') for _label, key in staging_db.EXPORT_COLUMNS])
    ws.freeze_panes = 'A2'
    buf = BytesIO()
    wb.save(buf)
    buf.seek(0)
    return buf


def create_app(db_path=None):
    app = Flask(__name__)
    app.config['STAGING_DB_PATH'] = db_path or staging_db.DEFAULT_DB_PATH
    staging_db.init_database(app.config['STAGING_DB_PATH'])
    socketio = SocketIO(app, cors_allowed_origins='*', async_mode='threading')

    @app.errorhandler(ValueError)
    def _bad_request(e):
        return jsonify({'error': str(e)}), 400

    @app.route('/api/health')
    def health():
        return jsonify({'ok': True, 'time': datetime.now().isoformat(timespec='seconds')})

    @app.route('/api/exists/<path:serial>')
    def exists(serial):
        row = staging_db.find_by_serial(_sheet(), serial, _db_path())
        return jsonify({'exists': row is not None, 'row': row})

    @app.route('/api/scan', methods=['POST'])
    def add_scan():
        payload = request.get_json(silent=True) or {}
        sheet = normalize_workspace(request.args.get('sheet') or payload.get('sheet') or 'main')
        if not str(payload.get('serial') or '').strip():
            return jsonify({'error': 'serial is required'}), 400
        try:
            new_id = staging_db.insert_scan(sheet, payload, _db_path())
        except Exception as e:
            logging.error(f"Error staging scan: {e}")
            return jsonify({'error': str(e)}), 500
        logging.info(f"Staged {payload.get('serial')} in {sheet} as #{new_id}")
        for row in staging_db.get_scans(sheet, [new_id], _db_path()):
            socketio.emit('new-scan', row)
        return jsonify({'id': new_id}), 201

    @app.route('/api/scans/bulk', methods=['POST'])
    def add_scans_bulk():
        body = request.get_json(silent=True) or {}
        items = body.get('items')
        if not isinstance(items, list):
            return jsonify({'ok': False, 'error': 'items must be a list'}), 400
        if any(not str((item or {}).get('serial') or '').strip() for item in items):
            return jsonify({'ok': False, 'error': 'every item needs a serial'}), 400
        sheet = _sheet()
        try:
            ids = staging_db.insert_many(sheet, items, _db_path())
        except Exception as e:
            logging.error(f"Error in bulk stage: {e}")
            return jsonify({'ok': False, 'error': str(e)}), 500
        logging.info(f"Bulk staged {len(ids)} scans in {sheet}")
        for row in staging_db.get_scans(sheet, ids, _db_path()):
            socketio.emit('new-scan', row)
        return jsonify({'ok': True, 'inserted': len(ids), 'ids': ids})

    @app.route('/api/staged', methods=['GET'])
    def list_staged():
        sheet = _sheet()
        limit = request.args.get('limit', default=200, type=int)
        cursor = request.args.get('cursor', default=None, type=int)
        rows, next_cursor = staging_db.list_page(sheet, limit=limit, cursor=cursor, db_path=_db_path())
        return jsonify({
            'rows': rows,
            'nextCursor': next_cursor,
            'total': staging_db.count(sheet, _db_path()),
        })

    @app.route('/api/staged/count', methods=['GET'])
    def count_staged():
        return jsonify({'count': staging_db.count(_sheet(), _db_path())})

    @app.route('/api/staged/<int:scan_id>', methods=['DELETE'])
    def delete_staged(scan_id):
        sheet = _sheet()
        if not staging_db.delete_scan(sheet, scan_id, _db_path()):
            return jsonify({'ok': False, 'error': 'Not found'}), 404
        logging.info(f"Deleted staged scan #{scan_id}")
        socketio.emit('deleted-scan', {'id': scan_id, 'sheet': sheet})
        return jsonify({'ok': True})

    @app.route('/api/staged', methods=['DELETE'])
    def clear_staged():
        sheet = _sheet()
        deleted = staging_db.clear(sheet, _db_path())
        logging.info(f"Cleared {deleted} staged scans from {sheet}")
        socketio.emit('cleared-scans', {'sheet': sheet})
        return jsonify({'ok': True, 'deleted': deleted})

    @app.route('/api/export-to-excel', methods=['POST'])
    def export_to_excel():
        sheet = _sheet()
        buf = build_workbook(sheet, staging_db.rows_for_export(sheet, _db_path()))
        return send_file(
            buf,
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            as_attachment=True,
            download_name=f'staged-{sheet}-{datetime.now().strftime("%Y%m%d-%H%M%S")}.xlsx'
        )

    return app


def main():
    parser = argparse.ArgumentParser(description='Rail staging server')
    parser.add_argument('--config', default=None, help='Path to config.json')
    parser.add_argument('--host', default=None)
    parser.add_argument('--port', type=int, default=None)
    parser.add_argument('--db', default=None, help='SQLite database path')
    args = parser.parse_args()

    configure_logging('staging_server.log')
    config = RailTrackerConfig(args.config)
    db_path = args.db or config.get_path('server.db_path', 'data/rail_staging.db')
    app = create_app(db_path)

    host = args.host or config.get('server.host', '0.0.0.0')
    port = args.port or config.get_int('server.port', 5010)
    logging.info(f"Staging server on {host}:{port} (db {db_path})")
    app.extensions['socketio'].run(app, host=host, port=port, debug=False, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    main()
