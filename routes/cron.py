"""
Scheduled jobs, called by an external scheduler with a bearer token.
"""
import hmac

from flask import Blueprint, jsonify, request, current_app

from utils.order_lifecycle import expire_virtual_accounts

cron_bp = Blueprint('cron', __name__, url_prefix='/api/cron')


def _authorized():
    secret = current_app.config.get("CRON_SECRET")
    if not secret:
        current_app.logger.error("CRON_SECRET is not configured")
        return False
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header, f"Bearer {secret}")


@cron_bp.route('/expire-virtual-accounts', methods=['GET', 'POST'])
def expire_virtual_account_orders():
    """Cancel pending virtual-account orders whose deposit deadline has passed."""
    if not _authorized():
        return jsonify({"success": False, "message": "Unauthorized"}), 401

    try:
        cancelled = expire_virtual_accounts()
    except Exception as e:
        current_app.logger.error(f"Virtual account expiry failed: {str(e)}", exc_info=True)
        return jsonify({"success": False, "message": "Expiry job failed."}), 500

    return jsonify({
        "success": True,
        "cancelled": len(cancelled),
        "cancelled_order_ids": cancelled,
    })
