"""Shared Flask-SQLAlchemy instance. Model modules import ``db`` from here."""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
