"""
Baseline schema written when the migrations directory does not exist yet.

Column names follow the legacy SQLite schema where the two overlap so the
importer can map them directly.
"""

from datetime import datetime, timezone

BASELINE_NAME = "init_schema"

_BASELINE_SQL = """-- Initial Nova Universe Schema
-- Created: {created}

-- Users table
CREATE TABLE IF NOT EXISTS users (
  id SERIAL PRIMARY KEY,
  name VARCHAR(255),
  email VARCHAR(255) UNIQUE NOT NULL,
  passwordHash VARCHAR(255),
  disabled BOOLEAN DEFAULT false,
  is_default BOOLEAN DEFAULT false,
  last_login TIMESTAMP,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Roles table
CREATE TABLE IF NOT EXISTS roles (
  id SERIAL PRIMARY KEY,
  name VARCHAR(100) UNIQUE NOT NULL,
  description TEXT,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Permissions table
CREATE TABLE IF NOT EXISTS permissions (
  id SERIAL PRIMARY KEY,
  name VARCHAR(100) UNIQUE NOT NULL,
  description TEXT,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- User roles junction table
CREATE TABLE IF NOT EXISTS user_roles (
  user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
  role_id INTEGER REFERENCES roles(id) ON DELETE CASCADE,
  assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  PRIMARY KEY (user_id, role_id)
);

-- Role permissions junction table
CREATE TABLE IF NOT EXISTS role_permissions (
  role_id INTEGER REFERENCES roles(id) ON DELETE CASCADE,
  permission_id INTEGER REFERENCES permissions(id) ON DELETE CASCADE,
  assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  PRIMARY KEY (role_id, permission_id)
);

-- Passkeys table for WebAuthn
CREATE TABLE IF NOT EXISTS passkeys (
  id SERIAL PRIMARY KEY,
  user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
  credential_id TEXT NOT NULL UNIQUE,
  public_key TEXT NOT NULL,
  counter INTEGER DEFAULT 0,
  transports TEXT,
  device_type VARCHAR(50),
  backed_up BOOLEAN DEFAULT false,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  last_used TIMESTAMP
);

-- Ticket logs table
CREATE TABLE IF NOT EXISTS logs (
  id SERIAL PRIMARY KEY,
  ticket_id VARCHAR(100),
  name VARCHAR(255),
  email VARCHAR(255),
  title VARCHAR(500),
  system VARCHAR(255),
  urgency VARCHAR(50),
  timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  email_status VARCHAR(50),
  servicenow_id VARCHAR(100)
);

-- Configuration table
CREATE TABLE IF NOT EXISTS config (
  key VARCHAR(255) PRIMARY KEY,
  value TEXT,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Kiosks table
CREATE TABLE IF NOT EXISTS kiosks (
  id VARCHAR(255) PRIMARY KEY,
  last_seen TIMESTAMP,
  version VARCHAR(50),
  active BOOLEAN DEFAULT false,
  logo_url TEXT,
  bg_url TEXT,
  status_enabled BOOLEAN DEFAULT false,
  current_status VARCHAR(100),
  open_msg TEXT,
  closed_msg TEXT,
  error_msg TEXT,
  meeting_msg TEXT,
  brb_msg TEXT,
  lunch_msg TEXT,
  unavailable_msg TEXT,
  schedule JSONB,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Feedback table
CREATE TABLE IF NOT EXISTS feedback (
  id SERIAL PRIMARY KEY,
  name VARCHAR(255),
  message TEXT,
  timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Notifications table
CREATE TABLE IF NOT EXISTS notifications (
  id SERIAL PRIMARY KEY,
  message TEXT NOT NULL,
  level VARCHAR(50) DEFAULT 'info',
  active BOOLEAN DEFAULT true,
  type VARCHAR(50) DEFAULT 'system',
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Directory integrations table
CREATE TABLE IF NOT EXISTS directory_integrations (
  id SERIAL PRIMARY KEY,
  provider VARCHAR(100) NOT NULL,
  settings JSONB,
  enabled BOOLEAN DEFAULT false,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Assets table
CREATE TABLE IF NOT EXISTS assets (
  id SERIAL PRIMARY KEY,
  name VARCHAR(255) NOT NULL,
  type VARCHAR(100) NOT NULL,
  filename VARCHAR(255) NOT NULL,
  url TEXT NOT NULL,
  size_bytes INTEGER,
  mime_type VARCHAR(255),
  uploaded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Kiosk activations table
CREATE TABLE IF NOT EXISTS kiosk_activations (
  id VARCHAR(255) PRIMARY KEY,
  code VARCHAR(20) NOT NULL,
  qr_code TEXT NOT NULL,
  expires_at TIMESTAMP NOT NULL,
  used BOOLEAN DEFAULT false,
  used_at TIMESTAMP,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- SSO configurations table
CREATE TABLE IF NOT EXISTS sso_configurations (
  id SERIAL PRIMARY KEY,
  provider VARCHAR(100) NOT NULL,
  enabled BOOLEAN DEFAULT false,
  configuration JSONB,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Admin PINs table (single row)
CREATE TABLE IF NOT EXISTS admin_pins (
  id INTEGER PRIMARY KEY DEFAULT 1,
  global_pin VARCHAR(255),
  kiosk_pins JSONB,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  CONSTRAINT single_row CHECK (id = 1)
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
CREATE INDEX IF NOT EXISTS idx_users_is_default ON users(is_default);
CREATE INDEX IF NOT EXISTS idx_passkeys_user_id ON passkeys(user_id);
CREATE INDEX IF NOT EXISTS idx_passkeys_credential_id ON passkeys(credential_id);
CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_logs_ticket_id ON logs(ticket_id);
CREATE INDEX IF NOT EXISTS idx_kiosks_active ON kiosks(active);
CREATE INDEX IF NOT EXISTS idx_notifications_active ON notifications(active);
CREATE INDEX IF NOT EXISTS idx_assets_type ON assets(type);
CREATE INDEX IF NOT EXISTS idx_kiosk_activations_expires ON kiosk_activations(expires_at);
"""


def render_baseline(created: datetime = None) -> str:
    """Return the baseline migration SQL."""
    created = created or datetime.now(timezone.utc)
    return _BASELINE_SQL.format(created=created.isoformat())
