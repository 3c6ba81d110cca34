"""create quiz_sets, questions, choices, games, participants

Revision ID: 4c1d7e2a9b10
Revises:
Create Date: 2026-10-19 00:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1d7e2a9b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'quiz_sets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_quiz_sets_created_at', 'quiz_sets', ['created_at'])

    op.create_table(
        'questions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quiz_set_id', sa.Integer(), sa.ForeignKey('quiz_sets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('body', sa.String(length=255), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('image_url', sa.String(length=512), nullable=True),
        sa.Column('time_limit', sa.Integer(), nullable=True),
    )
    op.create_index('ix_questions_quiz_set_id', 'questions', ['quiz_set_id'])

    op.create_table(
        'choices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('question_id', sa.Integer(), sa.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('body', sa.String(length=255), nullable=False),
        sa.Column('is_correct', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_choices_question_id', 'choices', ['question_id'])

    op.create_table(
        'games',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quiz_set_id', sa.Integer(), sa.ForeignKey('quiz_sets.id', ondelete='SET NULL'), nullable=True),
        sa.Column('phase', sa.String(length=32), nullable=False, server_default='lobby'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_games_quiz_set_id', 'games', ['quiz_set_id'])

    op.create_table(
        'participants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('game_id', sa.Integer(), sa.ForeignKey('games.id', ondelete='CASCADE'), nullable=False),
        sa.Column('nickname', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('game_id', 'nickname', name='uq_participants_game_nickname'),
    )
    op.create_index('ix_participants_game_id', 'participants', ['game_id'])


def downgrade():
    op.drop_index('ix_participants_game_id', table_name='participants')
    op.drop_table('participants')
    op.drop_index('ix_games_quiz_set_id', table_name='games')
    op.drop_table('games')
    op.drop_index('ix_choices_question_id', table_name='choices')
    op.drop_table('choices')
    op.drop_index('ix_questions_quiz_set_id', table_name='questions')
    op.drop_table('questions')
    op.drop_index('ix_quiz_sets_created_at', table_name='quiz_sets')
    op.drop_table('quiz_sets')
