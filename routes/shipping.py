"""
Shipping fee API
"""
from flask import Blueprint, jsonify, request, current_app

from utils.shipping import (
    calculate_shipping_fee_for_order, get_shipping_settings, is_valid_zipcode, ShippingSettingsError,
)
from utils.validators import parse_amount

shipping_bp = Blueprint('shipping', __name__, url_prefix='/api/shipping')

AMOUNT_INVALID_MSG = "Please provide a valid order amount."
ZIPCODE_INVALID_MSG = "Please provide a valid zipcode (5 digits)."
SHIPPING_CALC_FAIL_MSG = "Unable to calculate the shipping fee. Please try again later."


@shipping_bp.route('/calculate', methods=['POST'])
def calculate():
    """Shipping fee breakdown. Input: order_amount (number >= 0), zipcode (5 digits)."""
    data = request.get_json(silent=True) or {}
    order_amount = parse_amount(data.get("order_amount"))
    zipcode = data.get("zipcode")

    if order_amount is None:
        return jsonify({"success": False, "message": AMOUNT_INVALID_MSG}), 400
    if not is_valid_zipcode(zipcode):
        return jsonify({"success": False, "message": ZIPCODE_INVALID_MSG}), 400

    try:
        result = calculate_shipping_fee_for_order(order_amount, zipcode)
    except ShippingSettingsError as e:
        current_app.logger.error(f"Shipping settings missing: {str(e)}")
        return jsonify({"success": False, "message": str(e)}), 500
    except Exception as e:
        current_app.logger.error(f"Shipping fee calculation error: {str(e)}", exc_info=True)
        return jsonify({"success": False, "message": SHIPPING_CALC_FAIL_MSG}), 500

    return jsonify({"success": True, "data": result.to_dict()})


@shipping_bp.route('/calculate', methods=['GET'])
def settings():
    """Active shipping settings (base fee, free-shipping threshold, surcharges)."""
    try:
        return jsonify({"success": True, "data": get_shipping_settings().to_dict()})
    except ShippingSettingsError as e:
        return jsonify({"success": False, "message": str(e)}), 500
    except Exception as e:
        current_app.logger.error(f"Error loading shipping settings: {str(e)}", exc_info=True)
        return jsonify({"success": False, "message": "Unable to load shipping settings."}), 500
