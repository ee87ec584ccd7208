from app.api.booking.appointments import appointments_bp
from app.api.payments.payments import payments_bp
from app.api.payments.receipts import receipts_bp
from flask import Flask
from flask_cors import CORS
from dotenv import load_dotenv
from flasgger import Swagger
from swagger__config import SWAGGER_CONFIG, SWAGGER_TEMPLATE
import os

load_dotenv()
from app.config import Config  # noqa: E402
from app.extensions import db  # noqa: E402
from app.services.email_service import EmailNotificationService  # noqa: E402
from app.services.lifecycle import AppointmentLifecycle  # noqa: E402
from app.services.payment_ledger import SqlPaymentLedger  # noqa: E402
from app.services.payment_service import PaymentService  # noqa: E402


def create_app(config_overrides=None, notifications=None, payments=None):
    """
    Application factory.

    `notifications` and `payments` are the ports handed to the lifecycle
    service; they default to Resend email delivery and the SQL payment ledger.
    """
    app = Flask(__name__)
    try:
        app.config.from_object(Config)
        if config_overrides:
            app.config.update(config_overrides)
        app.logger.info(f"Config loaded: {len(app.config)} items")

        CORS(app)
        db.init_app(app)

        # Determine host based on environment
        host = os.environ.get("API_HOST", "127.0.0.1:5000")
        swagger_template = SWAGGER_TEMPLATE.copy()
        swagger_template["host"] = host
        Swagger(app, config=SWAGGER_CONFIG, template=swagger_template)
        app.logger.info("Swagger initialized - Access at /api/docs")

        if notifications is None:
            notifications = EmailNotificationService.from_config(app.config)
        lifecycle = AppointmentLifecycle(
            notifications=notifications,
            payments=payments or SqlPaymentLedger(),
        )
        app.extensions["appointment_lifecycle"] = lifecycle
        app.extensions["payment_service"] = PaymentService(lifecycle)

        blueprints = [
            appointments_bp,
            payments_bp,
            receipts_bp,
        ]

        for bp in blueprints:
            app.register_blueprint(bp)
            app.logger.info(f"  {bp.name} registered")

        @app.route("/")
        def home():
            """
            Root endpoint - API status
            ---
            tags:
              - Utility
            responses:
              200:
                description: API is running
                schema:
                  type: object
                  properties:
                    status:
                      type: string
                    message:
                      type: string
            """
            return {"status": "ok", "message": "Grooming backend is running!"}, 200

        app.logger.debug(
            f"Total routes registered: {len(list(app.url_map.iter_rules()))}"
        )

    except Exception as e:
        app.logger.exception(f"Error during app creation: {e}")
        raise

    return app


app = create_app()


if __name__ == "__main__":
    # Create a .env containing:
    #       MYSQL_PUBLIC_URL= mysql+pymysql://<USER>:<PASSWORD>@<HOST>:<PORT>/groomq
    #       SECRET_KEY=...
    #       RESEND_API_KEY=...   (or NOTIFICATIONS_ENABLED=False)

    port = int(os.environ.get("PORT", 5000))
    app.run(
        host="0.0.0.0", port=port, debug=os.environ.get("FLASK_ENV") != "production"
    )
