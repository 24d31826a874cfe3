from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

_pool: Optional[asyncpg.Pool] = None


async def init_pool(database_url: str):
    """Initialize the connection pool."""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(database_url, min_size=2, max_size=10)
    return _pool


async def get_pool() -> asyncpg.Pool:
    """Get the existing connection pool."""
    global _pool
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool first.")
    return _pool


async def close_pool():
    """Close the connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def get_connection():
    """Get a database connection from the pool."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn


async def init_db():
    """Create tables if they don't exist."""
    async with get_connection() as conn:
        # Companies table
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS companies (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                name VARCHAR(255) NOT NULL,
                subscription_status VARCHAR(20) NOT NULL DEFAULT 'trialing',
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        # Users table
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                company_id UUID REFERENCES companies(id) ON DELETE CASCADE,
                name VARCHAR(255) NOT NULL,
                email VARCHAR(255),
                phone VARCHAR(50),
                role VARCHAR(30) NOT NULL CHECK (role IN (
                    'admin', 'risk_manager', 'project_manager', 'project_administrator',
                    'read_only', 'subcontractor', 'broker'
                )),
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_company_role ON users(company_id, role)
        """)

        # Projects table
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                company_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                name VARCHAR(255) NOT NULL,
                status VARCHAR(20) NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'completed', 'on_hold')),
                project_manager_id UUID REFERENCES users(id) ON DELETE SET NULL,
                end_date DATE,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_projects_company_id ON projects(company_id)
        """)

        # Subcontractors table
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS subcontractors (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                company_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                name VARCHAR(255) NOT NULL,
                abn VARCHAR(20) NOT NULL DEFAULT '',
                contact_name VARCHAR(255),
                contact_email VARCHAR(255),
                contact_phone VARCHAR(50),
                broker_name VARCHAR(255),
                broker_email VARCHAR(255),
                broker_phone VARCHAR(50),
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        # Project assignments
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS project_subcontractors (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                subcontractor_id UUID NOT NULL REFERENCES subcontractors(id) ON DELETE CASCADE,
                status VARCHAR(20) NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'compliant', 'non_compliant', 'exception')),
                on_site_date DATE,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE(project_id, subcontractor_id)
            )
        """)

        # Certificate of currency documents
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS coc_documents (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                subcontractor_id UUID NOT NULL REFERENCES subcontractors(id) ON DELETE CASCADE,
                project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                file_name VARCHAR(500),
                received_at TIMESTAMPTZ DEFAULT NOW(),
                processing_status VARCHAR(20) NOT NULL DEFAULT 'pending'
                    CHECK (processing_status IN ('pending', 'processing', 'completed', 'failed'))
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_coc_documents_project ON coc_documents(project_id)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_coc_documents_pair
            ON coc_documents(subcontractor_id, project_id, received_at DESC)
        """)

        # Verifications (one per document)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS verifications (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                document_id UUID NOT NULL UNIQUE REFERENCES coc_documents(id) ON DELETE CASCADE,
                project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                status VARCHAR(10) NOT NULL CHECK (status IN ('pass', 'fail', 'review')),
                confidence_score DOUBLE PRECISION,
                extracted_data JSONB NOT NULL DEFAULT '{}'::jsonb,
                deficiencies JSONB NOT NULL DEFAULT '[]'::jsonb,
                verified_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
                verified_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_verifications_project ON verifications(project_id)
        """)

        # Outbound communications
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS communications (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                subcontractor_id UUID NOT NULL REFERENCES subcontractors(id) ON DELETE CASCADE,
                project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                verification_id UUID REFERENCES verifications(id) ON DELETE SET NULL,
                type VARCHAR(30) NOT NULL CHECK (type IN (
                    'deficiency', 'follow_up', 'confirmation', 'expiration_reminder', 'critical_alert'
                )),
                channel VARCHAR(10) NOT NULL DEFAULT 'email' CHECK (channel IN ('email', 'sms')),
                recipient_email VARCHAR(255),
                recipient_phone VARCHAR(50),
                cc_emails JSONB NOT NULL DEFAULT '[]'::jsonb,
                subject VARCHAR(500),
                status VARCHAR(20) NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'sent', 'delivered', 'opened', 'failed')),
                sent_at TIMESTAMPTZ,
                follow_up_count INTEGER NOT NULL DEFAULT 0,
                escalated_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_communications_verification
            ON communications(verification_id)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_communications_subject_type
            ON communications(subcontractor_id, type, sent_at)
        """)

        # Compliance exceptions
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS compliance_exceptions (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                project_subcontractor_id UUID NOT NULL
                    REFERENCES project_subcontractors(id) ON DELETE CASCADE,
                verification_id UUID REFERENCES verifications(id) ON DELETE SET NULL,
                issue_summary TEXT NOT NULL DEFAULT '',
                reason TEXT NOT NULL,
                risk_level VARCHAR(10) NOT NULL DEFAULT 'medium'
                    CHECK (risk_level IN ('low', 'medium', 'high')),
                created_by_user_id UUID NOT NULL REFERENCES users(id),
                approved_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
                approved_at TIMESTAMPTZ,
                expiration_type VARCHAR(20) NOT NULL DEFAULT 'until_resolved'
                    CHECK (expiration_type IN (
                        'until_resolved', 'fixed_duration', 'specific_date', 'permanent'
                    )),
                expires_at TIMESTAMPTZ,
                status VARCHAR(20) NOT NULL DEFAULT 'pending_approval'
                    CHECK (status IN ('pending_approval', 'active', 'expired', 'resolved', 'closed')),
                resolved_at TIMESTAMPTZ,
                resolution_type VARCHAR(50),
                resolution_notes TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_compliance_exceptions_assignment
            ON compliance_exceptions(project_subcontractor_id)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_compliance_exceptions_expiry
            ON compliance_exceptions(status, expires_at)
        """)

        # In-app notifications
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                company_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                type VARCHAR(30) NOT NULL,
                title VARCHAR(255) NOT NULL,
                message TEXT NOT NULL,
                link VARCHAR(500),
                entity_type VARCHAR(50),
                entity_id VARCHAR(100),
                read BOOLEAN NOT NULL DEFAULT false,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read)
        """)

        # Audit log
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                company_id UUID REFERENCES companies(id) ON DELETE CASCADE,
                user_id UUID REFERENCES users(id) ON DELETE SET NULL,
                entity_type VARCHAR(50) NOT NULL,
                entity_id VARCHAR(100) NOT NULL,
                action VARCHAR(100) NOT NULL,
                details JSONB NOT NULL DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_logs_entity
            ON audit_logs(entity_type, entity_id, action, created_at)
        """)

        # Daily per-company compliance counts
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS compliance_snapshots (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                company_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                snapshot_date DATE NOT NULL,
                total INTEGER NOT NULL DEFAULT 0,
                compliant INTEGER NOT NULL DEFAULT 0,
                non_compliant INTEGER NOT NULL DEFAULT 0,
                pending INTEGER NOT NULL DEFAULT 0,
                exception INTEGER NOT NULL DEFAULT 0,
                compliance_rate DOUBLE PRECISION,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE (company_id, snapshot_date)
            )
        """)

        # Scheduled job run ledger
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS cron_job_logs (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                job_name VARCHAR(100) NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                status VARCHAR(20) NOT NULL DEFAULT 'running'
                    CHECK (status IN ('running', 'success', 'partial', 'failed')),
                records_processed INTEGER NOT NULL DEFAULT 0,
                errors JSONB NOT NULL DEFAULT '[]'::jsonb,
                metadata JSONB NOT NULL DEFAULT '{}'::jsonb
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_cron_job_logs_job ON cron_job_logs(job_name, started_at DESC)
        """)

        # Per-task enable switch read by the Celery workers
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS scheduler_settings (
                task_key VARCHAR(100) PRIMARY KEY,
                display_name VARCHAR(255) NOT NULL,
                description TEXT,
                enabled BOOLEAN NOT NULL DEFAULT true,
                max_per_cycle INTEGER,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        await conn.execute("""
            INSERT INTO scheduler_settings (task_key, display_name, description, enabled)
            VALUES
                ('expiration_check', 'Expiration Check', 'Reminders for certificates nearing expiry', false),
                ('morning_brief', 'Morning Brief', 'Daily compliance summary for admins', false),
                ('follow_up_sequence', 'Follow-up Sequence', 'Staged follow-ups on unanswered deficiencies', false),
                ('stop_work_alerts', 'Stop-work Alerts', 'Alerts for non-compliant subcontractors on site', false),
                ('exception_expiry', 'Exception Expiry', 'Expire time-limited compliance exceptions', false)
            ON CONFLICT (task_key) DO NOTHING
        """)
