"""Visibility schema: jobs, pipelines, brand content, samples, scores, reports

Revision ID: d1a4f6c0e2b8
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'd1a4f6c0e2b8'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Job store
    op.create_table('jobs',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('pipeline_id', sa.Text(), nullable=True),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.Text(), nullable=True),
        sa.Column('available_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint('retry_count <= max_retries', name='ck_jobs_retry_bound'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_jobs_brand_id', 'jobs', ['brand_id'])
    op.create_index('ix_jobs_pipeline_id', 'jobs', ['pipeline_id'])
    op.create_index('ix_jobs_claim', 'jobs', ['status', 'priority', 'created_at'])

    op.create_table('job_dependencies',
        sa.Column('job_id', sa.Text(), nullable=False),
        sa.Column('depends_on_id', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id']),
        sa.ForeignKeyConstraint(['depends_on_id'], ['jobs.id']),
        sa.PrimaryKeyConstraint('job_id', 'depends_on_id'),
    )
    op.create_index('ix_job_dependencies_depends_on_id', 'job_dependencies', ['depends_on_id'])

    op.create_table('job_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Text(), nullable=False),
        sa.Column('level', sa.Text(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['jobs.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_job_logs_job_id', 'job_logs', ['job_id'])

    op.create_table('pipelines',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('profile', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('steps', sa.JSON(), nullable=False),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('first_job_id', sa.Text(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pipelines_brand_id', 'pipelines', ['brand_id'])

    # Brand directory
    op.create_table('brands',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('domain', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('competitors', sa.JSON(), nullable=True),
        sa.Column('monthly_budget', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # Crawled content
    op.create_table('raw_pages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('job_id', sa.Text(), nullable=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('canonical_url', sa.Text(), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('content_type', sa.Text(), nullable=True),
        sa.Column('content_hash', sa.Text(), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('meta_description', sa.Text(), nullable=True),
        sa.Column('html', sa.Text(), nullable=True),
        sa.Column('content_length', sa.Integer(), nullable=True),
        sa.Column('fetched_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_raw_pages_brand_id', 'raw_pages', ['brand_id'])

    op.create_table('page_content',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('raw_page_id', sa.Integer(), nullable=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('main_content', sa.Text(), nullable=True),
        sa.Column('headings', sa.JSON(), nullable=True),
        sa.Column('json_ld', sa.JSON(), nullable=True),
        sa.Column('word_count', sa.Integer(), nullable=True),
        sa.Column('extracted_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['raw_page_id'], ['raw_pages.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_page_content_brand_id', 'page_content', ['brand_id'])

    op.create_table('brand_claims',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('claim_text', sa.Text(), nullable=False),
        sa.Column('claim_type', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('source_url', sa.Text(), nullable=True),
        sa.Column('source_context', sa.Text(), nullable=True),
        sa.Column('extracted_by', sa.Text(), nullable=True),
        sa.Column('extracted_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_brand_claims_brand_id', 'brand_claims', ['brand_id'])

    op.create_table('content_chunks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('page_content_id', sa.Integer(), nullable=True),
        sa.Column('chunk_index', sa.Integer(), nullable=True),
        sa.Column('chunk_type', sa.Text(), nullable=True),
        sa.Column('chunk_text', sa.Text(), nullable=False),
        sa.Column('token_count', sa.Integer(), nullable=True),
        sa.Column('embedding', sa.JSON(), nullable=True),
        sa.Column('embedding_model', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['page_content_id'], ['page_content.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_content_chunks_brand_id', 'content_chunks', ['brand_id'])

    # Sampling, scoring, reporting
    op.create_table('sample_results',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('job_id', sa.Text(), nullable=True),
        sa.Column('model', sa.Text(), nullable=False),
        sa.Column('provider', sa.Text(), nullable=True),
        sa.Column('prompt_key', sa.Text(), nullable=False),
        sa.Column('paraphrase_index', sa.Integer(), nullable=False),
        sa.Column('intent', sa.Text(), nullable=True),
        sa.Column('prompt_text', sa.Text(), nullable=True),
        sa.Column('response_text', sa.Text(), nullable=True),
        sa.Column('input_tokens', sa.Integer(), nullable=True),
        sa.Column('output_tokens', sa.Integer(), nullable=True),
        sa.Column('total_tokens', sa.Integer(), nullable=True),
        sa.Column('cost', sa.Float(), nullable=True),
        sa.Column('execution_time_ms', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sample_results_job_id', 'sample_results', ['job_id'])
    op.create_index('ix_sample_results_brand_created', 'sample_results', ['brand_id', 'created_at'])

    op.create_table('visibility_scores',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('job_id', sa.Text(), nullable=True),
        sa.Column('engine', sa.Text(), nullable=False),
        sa.Column('prompt_sov', sa.Float(), nullable=False),
        sa.Column('generative_appearance', sa.Float(), nullable=False),
        sa.Column('citation_authority', sa.Float(), nullable=False),
        sa.Column('answer_quality', sa.Float(), nullable=False),
        sa.Column('voice_presence', sa.Float(), nullable=False),
        sa.Column('ai_traffic', sa.Float(), nullable=False),
        sa.Column('ai_conversions', sa.Float(), nullable=False),
        sa.Column('total_score', sa.Integer(), nullable=False),
        sa.Column('calculation_metadata', sa.JSON(), nullable=True),
        sa.Column('calculated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_visibility_scores_brand_engine', 'visibility_scores',
                    ['brand_id', 'engine', 'calculated_at'])

    op.create_table('reports',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('brand_id', sa.Text(), nullable=False),
        sa.Column('job_id', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('overall_score', sa.Integer(), nullable=True),
        sa.Column('score_snapshot', sa.JSON(), nullable=True),
        sa.Column('insights', sa.JSON(), nullable=True),
        sa.Column('recommendations', sa.JSON(), nullable=True),
        sa.Column('report_data', sa.JSON(), nullable=True),
        sa.Column('json_url', sa.Text(), nullable=True),
        sa.Column('narrative_url', sa.Text(), nullable=True),
        sa.Column('page_count', sa.Integer(), nullable=True),
        sa.Column('size_bytes', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_reports_brand_id', 'reports', ['brand_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_reports_brand_id', table_name='reports')
    op.drop_table('reports')
    op.drop_index('ix_visibility_scores_brand_engine', table_name='visibility_scores')
    op.drop_table('visibility_scores')
    op.drop_index('ix_sample_results_brand_created', table_name='sample_results')
    op.drop_index('ix_sample_results_job_id', table_name='sample_results')
    op.drop_table('sample_results')
    op.drop_index('ix_content_chunks_brand_id', table_name='content_chunks')
    op.drop_table('content_chunks')
    op.drop_index('ix_brand_claims_brand_id', table_name='brand_claims')
    op.drop_table('brand_claims')
    op.drop_index('ix_page_content_brand_id', table_name='page_content')
    op.drop_table('page_content')
    op.drop_index('ix_raw_pages_brand_id', table_name='raw_pages')
    op.drop_table('raw_pages')
    op.drop_table('brands')
    op.drop_index('ix_pipelines_brand_id', table_name='pipelines')
    op.drop_table('pipelines')
    op.drop_index('ix_job_logs_job_id', table_name='job_logs')
    op.drop_table('job_logs')
    op.drop_index('ix_job_dependencies_depends_on_id', table_name='job_dependencies')
    op.drop_table('job_dependencies')
    op.drop_index('ix_jobs_claim', table_name='jobs')
    op.drop_index('ix_jobs_pipeline_id', table_name='jobs')
    op.drop_index('ix_jobs_brand_id', table_name='jobs')
    op.drop_table('jobs')
