"""Initial support chat schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def create_enum_if_not_exists(enum_name, enum_values):
    """Create PostgreSQL ENUM type if it doesn't exist"""
    enum_name_escaped = enum_name.replace('"', '""')
    values_str = ", ".join(["'" + v.replace("'", "''") + "'" for v in enum_values])
    op.execute(f"""
        DO $$ BEGIN
            IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{enum_name_escaped}') THEN
                CREATE TYPE "{enum_name_escaped}" AS ENUM ({values_str});
            END IF;
        END $$;
    """)


# SQLAlchemy stores enum member names
ENUMS = {
    'knowledgesource': ['FAQ', 'TICKET_RESOLUTION', 'MANUAL', 'CHAT_LEARNING'],
    'conversationstatus': ['ACTIVE', 'RESOLVED', 'ESCALATED', 'ABANDONED'],
    'resolutiontype': ['AI_RESOLVED', 'ESCALATED', 'USER_LEFT', 'TIMEOUT'],
    'sendertype': ['USER', 'AI', 'SYSTEM'],
    'answersource': ['KNOWLEDGE_BASE', 'GENERATIVE', 'GENERATIVE_FALLBACK', 'IMPROVED_FROM_FEEDBACK'],
    'feedbacktype': ['INCORRECT', 'INCOMPLETE', 'UNCLEAR', 'OUTDATED', 'OTHER'],
    'learningstatus': ['PENDING', 'REVIEWED', 'LEARNED', 'AUTO_LEARNED', 'REJECTED'],
    'learningsourcetype': ['FEEDBACK', 'PATTERN', 'TICKET', 'MANUAL'],
    'learningqueuestatus': ['PENDING', 'APPROVED', 'REJECTED', 'AUTO_APPROVED'],
    'promotionaction': ['CREATED', 'UPDATED'],
}


def enum_column(name):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    for enum_name, values in ENUMS.items():
        create_enum_if_not_exists(enum_name, values)

    # Knowledge base
    op.create_table(
        'chat_knowledge_base',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('pattern', sa.Text(), nullable=False),
        sa.Column('answer', sa.Text(), nullable=False),
        sa.Column('category', sa.String(), nullable=False, index=True),
        sa.Column('keywords', postgresql.JSONB(), nullable=False),
        sa.Column('source', enum_column('knowledgesource'), nullable=False, index=True),
        sa.Column('source_id', sa.String(), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('confidence_threshold', sa.Float(), nullable=False, server_default='0.8'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column('language', sa.String(), nullable=False, server_default='de'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'chat_knowledge_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('knowledge_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_knowledge_base.id'), nullable=False, index=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('pattern', sa.Text(), nullable=False),
        sa.Column('answer', sa.Text(), nullable=False),
        sa.Column('change_source', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
    )

    # Conversations
    op.create_table(
        'chat_conversations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False, index=True),
        sa.Column('status', enum_column('conversationstatus'), nullable=False, index=True),
        sa.Column('resolution_type', enum_column('resolutiontype'), nullable=True),
        sa.Column('escalated_ticket_ref', sa.String(), nullable=True),
        sa.Column('message_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fallback_attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('satisfaction_rating', sa.Integer(), nullable=True),
        sa.Column('was_helpful', sa.Boolean(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'chat_messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_conversations.id'), nullable=False, index=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('sender_type', enum_column('sendertype'), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('related_knowledge_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_knowledge_base.id'), nullable=True),
        sa.Column('answer_source', enum_column('answersource'), nullable=True),
        sa.Column('was_helpful', sa.Boolean(), nullable=True),
        sa.Column('success_revoked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('source_metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
        sa.CheckConstraint(
            "(sender_type = 'AI' AND confidence_score IS NOT NULL) OR "
            "(sender_type != 'AI' AND confidence_score IS NULL AND related_knowledge_id IS NULL)",
            name='ck_chat_messages_ai_confidence',
        ),
        sa.UniqueConstraint('conversation_id', 'sequence', name='uq_chat_messages_sequence'),
    )

    # Feedback and learning
    op.create_table(
        'chat_feedback_details',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_messages.id'), nullable=False, index=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_conversations.id'), nullable=False, index=True),
        sa.Column('user_id', sa.String(), nullable=True, index=True),
        sa.Column('original_question', sa.Text(), nullable=False),
        sa.Column('original_answer', sa.Text(), nullable=False),
        sa.Column('related_knowledge_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_knowledge_base.id'), nullable=True),
        sa.Column('feedback_type', enum_column('feedbacktype'), nullable=False),
        sa.Column('feedback_text', sa.Text(), nullable=True),
        sa.Column('correct_answer', sa.Text(), nullable=True),
        sa.Column('retry_attempted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('improved_answer', sa.Text(), nullable=True),
        sa.Column('improved_answer_message_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_messages.id'), nullable=True),
        sa.Column('improved_answer_helpful', sa.Boolean(), nullable=True),
        sa.Column('learning_status', enum_column('learningstatus'), nullable=False, index=True),
        sa.Column('learned_at', sa.DateTime(), nullable=True),
        sa.Column('reviewed_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'chat_learning_queue',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('source_type', enum_column('learningsourcetype'), nullable=False, index=True),
        sa.Column('source_id', sa.String(), nullable=True),
        sa.Column('question_pattern', sa.Text(), nullable=False),
        sa.Column('answer_template', sa.Text(), nullable=False),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('keywords', postgresql.JSONB(), nullable=False),
        sa.Column('language', sa.String(), nullable=False, server_default='de'),
        sa.Column('confidence_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', enum_column('learningqueuestatus'), nullable=False, index=True),
        sa.Column('reviewed_by', sa.String(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('knowledge_entry_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_knowledge_base.id'), nullable=True),
        sa.Column('promotion_action', enum_column('promotionaction'), nullable=True),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('source_type', 'source_id', name='uq_learning_queue_source'),
    )

    op.create_table(
        'chat_recurring_questions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('question_normalized', sa.Text(), nullable=False, unique=True, index=True),
        sa.Column('question_examples', postgresql.JSONB(), nullable=False),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('keywords', postgresql.JSONB(), nullable=False),
        sa.Column('ask_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_asked_at', sa.DateTime(), nullable=False),
        sa.Column('last_asked_at', sa.DateTime(), nullable=False),
        sa.Column('successful_responses', postgresql.JSONB(), nullable=False),
        sa.Column('avg_confidence_score', sa.Float(), nullable=True),
        sa.Column('confidence_samples', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('learning_priority', sa.Integer(), nullable=False, server_default='0', index=True),
        sa.Column('suggested_for_learning', sa.Boolean(), nullable=False, server_default=sa.false(), index=True),
        sa.Column('has_knowledge_entry', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Audit Events
    op.create_table(
        'audit_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_conversations.id'), nullable=True, index=True),
        sa.Column('knowledge_entry_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('chat_knowledge_base.id'), nullable=True, index=True),
        sa.Column('event_type', sa.String(), nullable=False, index=True),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
    )


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_table('chat_recurring_questions')
    op.drop_table('chat_learning_queue')
    op.drop_table('chat_feedback_details')
    op.drop_table('chat_messages')
    op.drop_table('chat_conversations')
    op.drop_table('chat_knowledge_history')
    op.drop_table('chat_knowledge_base')
    for enum_name in reversed(list(ENUMS)):
        op.execute(f'DROP TYPE IF EXISTS "{enum_name}"')
