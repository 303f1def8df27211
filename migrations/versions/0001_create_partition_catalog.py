"""create_partition_catalog

Revision ID: 0001_partition_catalog
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_partition_catalog'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_MODES = "'time-static', 'time-dynamic', 'time-custom', 'id-static', 'id-dynamic'"


def upgrade() -> None:
    op.create_table(
        'part_config',
        sa.Column('parent_table', sa.String(), nullable=False),
        sa.Column('control', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('part_interval', sa.String(), nullable=False),
        sa.Column('constraint_cols', sa.JSON(), nullable=True),
        sa.Column('premake', sa.Integer(), nullable=False, server_default='4'),
        sa.Column('inherit_fk', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('retention', sa.String(), nullable=True),
        sa.Column('retention_mode', sa.String(), nullable=False, server_default='detach'),
        sa.Column('retention_schema', sa.String(), nullable=True),
        sa.Column('datetime_string', sa.String(), nullable=True),
        sa.Column('use_run_maintenance', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('undo_in_progress', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint(f"type IN ({_MODES})", name=op.f('ck_part_config_type')),
        sa.CheckConstraint('premake > 0', name=op.f('ck_part_config_positive_premake')),
        sa.PrimaryKeyConstraint('parent_table', name=op.f('pk_part_config')),
    )
    op.create_table(
        'part_config_sub',
        sa.Column('sub_parent', sa.String(), nullable=False),
        sa.Column('sub_type', sa.String(), nullable=False),
        sa.Column('sub_control', sa.String(), nullable=False),
        sa.Column('sub_part_interval', sa.String(), nullable=False),
        sa.Column('sub_constraint_cols', sa.JSON(), nullable=True),
        sa.Column('sub_premake', sa.Integer(), nullable=False, server_default='4'),
        sa.Column('sub_inherit_fk', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sub_retention', sa.String(), nullable=True),
        sa.Column('sub_use_run_maintenance', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint(f"sub_type IN ({_MODES})", name=op.f('ck_part_config_sub_sub_type')),
        sa.CheckConstraint('sub_premake > 0', name=op.f('ck_part_config_sub_positive_sub_premake')),
        sa.ForeignKeyConstraint(
            ['sub_parent'], ['part_config.parent_table'],
            name=op.f('fk_part_config_sub_sub_parent_part_config'),
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('sub_parent', name=op.f('pk_part_config_sub')),
    )
    op.create_table(
        'custom_time_partitions',
        sa.Column('parent_table', sa.String(), nullable=False),
        sa.Column('child_table', sa.String(), nullable=False),
        sa.Column('range_start', sa.DateTime(timezone=False), nullable=False),
        sa.Column('range_end', sa.DateTime(timezone=False), nullable=False),
        sa.PrimaryKeyConstraint('parent_table', 'child_table', name=op.f('pk_custom_time_partitions')),
    )
    op.create_index(
        'ix_custom_time_partitions_parent_start',
        'custom_time_partitions',
        ['parent_table', 'range_start'],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index('ix_custom_time_partitions_parent_start', table_name='custom_time_partitions')
    op.drop_table('custom_time_partitions')
    op.drop_table('part_config_sub')
    op.drop_table('part_config')
