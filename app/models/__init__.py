"""
Translation KPI Platform
Model package.

Every model module imports the shared SQLAlchemy handle from here:
    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
