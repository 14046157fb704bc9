import logging
import pathlib
import sys

import pgbridge
import pytest
from pgbridge import PostgresClient
from testcontainers.postgres import PostgresContainer

from libb import Setting

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
sys.path.insert(0, str(HERE.parent))
import config

logger = logging.getLogger(__name__)


@pytest.fixture(scope='session')
def psql_docker(request):
    """Session-scoped PostgreSQL container using testcontainers.

    Testcontainers automatically:
    - Assigns a random available port
    - Waits for the database to be ready
    - Handles cleanup when the session ends

    Tests depending on it are skipped when Docker is not available.
    """
    container = PostgresContainer(
        image='postgres:16',
        username=config.postgresql.username,
        password=config.postgresql.password,
        dbname=config.postgresql.database,
    ).with_env('TZ', 'US/Eastern').with_env('PGTZ', 'US/Eastern')

    try:
        container.start()
    except Exception as e:
        pytest.skip(f'PostgreSQL container unavailable: {e}')

    try:
        # Update config with dynamic host/port
        Setting.unlock()
        config.postgresql.hostname = container.get_container_host_ip()
        config.postgresql.port = int(container.get_exposed_port(5432))
        Setting.lock()

        logger.info(
            f'PostgreSQL container started at '
            f'{config.postgresql.hostname}:{config.postgresql.port}'
        )

        # Verify connection works
        cn = pgbridge.connect('postgresql', config=config)
        cn.close()

        def finalizer():
            try:
                container.stop()
                logger.info('PostgreSQL container stopped')
            except Exception as e:
                logger.warning(f'Error stopping container: {e}')

        request.addfinalizer(finalizer)
        return container

    except Exception as e:
        logger.error(f'Error setting up postgres container: {e}')
        try:
            container.stop()
        except Exception:
            pass
        raise


def stage_test_data(cn):
    pgbridge.execute(cn, 'drop table if exists test_table')
    pgbridge.execute(cn, 'drop table if exists test_copy')

    create_and_insert_data = """
create table test_table (
    id serial not null,
    name varchar(255) not null,
    value integer not null,
    primary key (name)
);

insert into test_table (name, value) values
('Alice', 10),
('Bob', 20),
('Charlie', 30),
('Ethan', 50),
('Fiona', 70),
('George', 80);

create table test_copy (
    id integer not null,
    name text not null,
    primary key (id)
);
"""
    pgbridge.execute(cn, create_and_insert_data)


@pytest.fixture
def conn(psql_docker):
    """
    Executor fixture with function scope for clean tests.
    Each test gets a fresh connection with reset test data.
    """
    cn = pgbridge.connect('postgresql', config=config)
    try:
        stage_test_data(cn)
        yield cn
    finally:
        try:
            if not cn.closed:
                cn.close()
        except Exception as e:
            logger.warning(f'Error during connection cleanup: {e}')


@pytest.fixture
def other_conn(psql_docker):
    """A second session on the same database."""
    cn = pgbridge.connect('postgresql', config=config)
    try:
        yield cn
    finally:
        if not cn.closed:
            cn.close()


@pytest.fixture
def pg(conn):
    """PostgresClient over the `conn` executor."""
    return PostgresClient(conn)
