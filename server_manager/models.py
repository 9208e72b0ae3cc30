from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class Server(db.Model):
    __tablename__ = 'servers'

    id = db.Column(db.Integer, primary_key=True)
    server_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='TO_SETUP')

    # Backing container, replaced when the server is reconfigured
    container_id = db.Column(db.String(100), nullable=True)
    port = db.Column(db.Integer, nullable=False)

    # Game properties passed to the container environment
    version = db.Column(db.String(20), nullable=False, default='LATEST')
    motd = db.Column(db.String(200), nullable=False, default='A simple server')
    difficulty = db.Column(db.String(20), nullable=False, default='easy')
    max_players = db.Column(db.Integer, nullable=False, default=20)
    level_name = db.Column(db.String(100), nullable=False, default='world')

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'server_id': self.server_id,
            'name': self.name,
            'status': self.status,
            'container_id': self.container_id,
            'port': self.port,
            'version': self.version,
            'motd': self.motd,
            'difficulty': self.difficulty,
            'max_players': self.max_players,
            'level_name': self.level_name,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    @property
    def properties(self) -> dict:
        return {
            'version': self.version,
            'motd': self.motd,
            'difficulty': self.difficulty,
            'max_players': self.max_players,
            'level_name': self.level_name,
        }
