# Overview: Flask extension instances for database, migrations and the payment gateway.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.omise_gateway import OmiseGateway

db = SQLAlchemy()
migrate = Migrate()
gateway = OmiseGateway()
