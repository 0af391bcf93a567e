"""
Dashboard Bridge
================
Flask + Socket.IO bridge from engine events to dashboard clients, with
JSON endpoints for status, risk and trade history.
"""

from typing import Optional, Tuple
import logging

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit

from ..config import DashboardConfig
from .events import EngineEvent

logger = logging.getLogger(__name__)


def create_dashboard(engine, risk_manager, config=None, secret_key: str = "crypto_trading_dashboard"
                     ) -> Tuple[Flask, SocketIO]:
    """
    Build the dashboard app for an auto-trade engine.

    Every engine event is forwarded to connected clients as
    `engine_event`. Returns (app, socketio); serve with socketio.run().
    """
    config = config or DashboardConfig()

    app = Flask(__name__)
    app.config['SECRET_KEY'] = secret_key
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

    def forward(event: EngineEvent):
        socketio.emit('engine_event', event.to_dict())

    app.extensions['engine_unsubscribe'] = engine.subscribe(forward)

    @app.route('/api/status')
    def get_status():
        return jsonify(engine.get_status())

    @app.route('/api/risk')
    def get_risk():
        stats = risk_manager.stats()
        stats['positions'] = [p.to_dict() for p in risk_manager.open_positions()]
        return jsonify(stats)

    @app.route('/api/trades')
    def get_trades():
        limit: Optional[int] = request.args.get('limit', type=int)
        return jsonify([t.to_dict() for t in risk_manager.trade_history(limit)])

    @socketio.on('connect')
    def handle_connect():
        logger.info("Dashboard client connected")
        emit('engine_status', engine.get_status())

    @socketio.on('disconnect')
    def handle_disconnect():
        logger.info("Dashboard client disconnected")

    @socketio.on('request_update')
    def handle_request_update():
        emit('engine_status', engine.get_status())

    logger.info(f"Dashboard configured on {config.host}:{config.port}")
    return app, socketio
