from flask import jsonify


class StorefrontError(Exception):
    status_code = 400

    def __init__(self, message: str, details: dict | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(StorefrontError):
    status_code = 400


class AuthError(StorefrontError):
    status_code = 401


class NotFoundError(StorefrontError):
    status_code = 404


class PaymentError(StorefrontError):
    status_code = 500


def register_error_handlers(app):
    @app.errorhandler(StorefrontError)
    def _storefront_error(err: StorefrontError):
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(404)
    def _not_found(_err):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def _method_not_allowed(_err):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def _internal(err):
        app.logger.error("unhandled error: %s", err)
        return jsonify({"error": "Internal server error"}), 500
