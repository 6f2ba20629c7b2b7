"""
Unit tests for MatchService.
Tests: create_request quotas, process_match, server callbacks, polling,
       result fetch retries, close
"""
import pytest

from matchmaker.errors import (
    AdmissionError, NotFoundError, ProbeError, ProvisioningError,
    StateConflictError, ValidationError,
)
from matchmaker.match_service import RESULT_FETCH
from shared.state_machine import LobbyStatus, MatchStatus


MATCH_OPTIONS = {'game': 'tf2', 'region': 'eu', 'required_players': 4}

SERVER = {
    '_id': 'srv-1',
    'ip': '10.0.0.5',
    'port': 27015,
    'data': {'hatchAddress': ':27019', 'hatchPassword': 'hatch'},
}


@pytest.fixture
def distributed(services, sample_client, lobby_options, player_data):
    """A lobby whose four players were just distributed."""
    lobbies, matches = services
    lobby = lobbies.create_request(sample_client, lobby_options())
    for n in range(4):
        lobbies.add_player(sample_client, lobby.lobby_id, player_data(n))
    lobbies.process_lobby(lobby)
    return lobby, matches.find(lobby.match_id)


def advance(matches, match, *statuses):
    for status in statuses:
        matches.matches.set_status(match, status)


class TestCreateRequest:
    """Tests for entitlement and quota checks."""

    def test_creates_waiting_match(self, services, sample_client):
        """Matches start waiting for their lobby."""
        _, matches = services
        match = matches.create_request(sample_client, dict(MATCH_OPTIONS))
        assert match.status == MatchStatus.WAITING_FOR_LOBBY.value
        assert match.preferences['create_server'] is True

    def test_region_not_allowed(self, services, sample_client):
        """Regions outside the client's access are refused."""
        _, matches = services
        with pytest.raises(AdmissionError):
            matches.create_request(sample_client, dict(MATCH_OPTIONS, region='asia'))

    def test_required_players_bounds(self, services, sample_client):
        """required_players must be a sensible team size."""
        _, matches = services
        with pytest.raises(ValidationError):
            matches.create_request(sample_client, dict(MATCH_OPTIONS, required_players=1))

    def test_region_quota(self, services, sample_client):
        """The per-region limit answers 429."""
        _, matches = services
        for _ in range(3):
            matches.create_request(sample_client, dict(MATCH_OPTIONS))

        with pytest.raises(AdmissionError) as exc:
            matches.create_request(sample_client, dict(MATCH_OPTIONS))
        assert exc.value.status_code == 429

    def test_global_quota(self, services, sample_client):
        """The client wide limit applies across regions."""
        _, matches = services
        for _ in range(3):
            matches.create_request(sample_client, dict(MATCH_OPTIONS))
        for _ in range(2):
            matches.create_request(sample_client, dict(MATCH_OPTIONS, region='na'))

        with pytest.raises(AdmissionError) as exc:
            matches.create_request(sample_client, dict(MATCH_OPTIONS, region='na'))
        assert exc.value.code == 'quota_exceeded'

    def test_terminal_matches_free_quota(self, services, sample_client):
        """Only active matches count towards the quota."""
        _, matches = services
        created = [matches.create_request(sample_client, dict(MATCH_OPTIONS)) for _ in range(3)]
        matches.matches.set_status(created[0], MatchStatus.FINISHED)
        matches.create_request(sample_client, dict(MATCH_OPTIONS))


class TestPlayerJoin:
    """Tests for adding players to a match directly."""

    def test_join_appends(self, services, sample_client, player_data):
        _, matches = services
        match = matches.create_request(sample_client, dict(MATCH_OPTIONS))

        matches.player_join(sample_client, match.match_id, player_data(1))
        matches.player_join(sample_client, match.match_id, player_data(2, roles=['player', 'medic']))

        assert [p['discord'] for p in match.players] == ['discord-1', 'discord-2']
        assert match.players[1]['roles'] == ['player', 'medic']

    def test_join_after_roster_conflicts(self, distributed, services, sample_client, player_data):
        """Once the lobby hands over its roster the match is closed to joins."""
        _, matches = services
        _, match = distributed
        with pytest.raises(StateConflictError):
            matches.player_join(sample_client, match.match_id, player_data(9))
        assert len(match.players) == 4

    def test_join_requires_player_fields(self, services, sample_client):
        _, matches = services
        match = matches.create_request(sample_client, dict(MATCH_OPTIONS))
        with pytest.raises(ValidationError):
            matches.player_join(sample_client, match.match_id, {'name': 'No Roles'})

    def test_join_other_clients_match(self, services, sample_client, player_data):
        """Matches of other clients are not found."""
        _, matches = services
        with pytest.raises(NotFoundError):
            matches.player_join(sample_client, 'm_missing', player_data(1))


class TestProcessMatch:
    """Tests for the hand-off from lobby to match."""

    def test_roster_copied_and_server_requested(self, distributed, fleet):
        """The match takes the roster and asks Lighthouse for a server."""
        lobby, match = distributed
        assert lobby.status == LobbyStatus.DISTRIBUTED.value
        assert match.status == MatchStatus.CREATING_SERVER.value
        assert len(match.players) == 4
        assert match.server_id == 'srv-1'
        fleet.create_server.assert_called_once()
        assert fleet.create_server.call_args.args[:3] == ('tf2', 'eu', 'provider-a')

    def test_preferred_provider(self, services, sample_client, lobby_options, player_data, fleet):
        """A preferred provider skips the provider lookup."""
        lobbies, _ = services
        options = lobby_options()
        options['match_options']['preferences'] = {'provider': 'provider-z'}
        lobby = lobbies.create_request(sample_client, options)
        lobbies.process_lobby(lobby)

        fleet.get_region_providers.assert_not_called()
        assert fleet.create_server.call_args.args[2] == 'provider-z'

    def test_no_server_goes_live(self, services, sample_client, lobby_options, fleet):
        """Matches that do not want a server go live right away."""
        lobbies, matches = services
        options = lobby_options()
        options['match_options']['preferences'] = {'create_server': False}
        lobby = lobbies.create_request(sample_client, options)
        lobbies.process_lobby(lobby)

        assert matches.find(lobby.match_id).status == MatchStatus.LIVE.value
        fleet.create_server.assert_not_called()

    def test_no_provider_fails_and_closes_lobby(self, services, sample_client, lobby_options, fleet):
        """Without providers the match fails and its lobby closes."""
        lobbies, matches = services
        fleet.get_region_providers.return_value = []
        lobby = lobbies.create_request(sample_client, lobby_options())
        lobbies.process_lobby(lobby)

        assert matches.find(lobby.match_id).status == MatchStatus.FAILED.value
        assert lobby.status == LobbyStatus.CLOSED.value

    def test_provisioning_error_fails(self, services, sample_client, lobby_options, fleet):
        """Lighthouse errors, malformed answers included, fail the match and close the lobby."""
        lobbies, matches = services
        fleet.create_server.side_effect = ProvisioningError("Lighthouse answered without a server id")
        lobby = lobbies.create_request(sample_client, lobby_options())
        lobbies.process_lobby(lobby)

        assert matches.find(lobby.match_id).status == MatchStatus.FAILED.value
        assert lobby.status == LobbyStatus.CLOSED.value

    def test_ignored_when_not_waiting(self, distributed, services):
        """A second hand-off is ignored."""
        _, matches = services
        _, match = distributed
        matches.process_match(match.match_id, [])
        assert len(match.players) == 4


class TestHandleServerStatus:
    """Tests for Lighthouse status callbacks."""

    def test_idle_server_waits_for_players(self, distributed, services):
        """IDLE or RUNNING while creating means players can connect."""
        _, matches = services
        _, match = distributed
        matches.handle_server_status(dict(SERVER, status='IDLE'), 'IDLE')
        assert match.status == MatchStatus.WAITING_FOR_PLAYERS.value
        assert match.server['status'] == 'IDLE'

    def test_failed_while_creating(self, distributed, services, notifier):
        """FAILED while creating fails the match and closes the lobby, one notification each."""
        _, matches = services
        lobby, match = distributed
        notifier.notify.reset_mock()

        matches.handle_server_status(dict(SERVER), 'FAILED')

        assert match.status == MatchStatus.FAILED.value
        assert lobby.status == LobbyStatus.CLOSED.value
        calls = [(c.args[0], c.args[1].status) for c in notifier.notify.call_args_list]
        assert calls == [('match', 'FAILED'), ('lobby', 'CLOSED')]

    def test_closed_after_start_finishes(self, distributed, services):
        """A server closing on a running match finishes it."""
        _, matches = services
        lobby, match = distributed
        advance(matches, match, MatchStatus.LIVE)

        matches.handle_server_status(dict(SERVER), 'CLOSED')
        assert match.status == MatchStatus.FINISHED.value
        assert lobby.status == LobbyStatus.CLOSED.value

    def test_whitelist_on_ready(self, services, sample_client, lobby_options, player_data, probe):
        """Rosters are whitelisted when the match asks for it."""
        lobbies, matches = services
        options = lobby_options()
        options['match_options']['preferences'] = {'whitelist': True}
        lobby = lobbies.create_request(sample_client, options)
        for n in range(4):
            lobbies.add_player(sample_client, lobby.lobby_id, player_data(n))
        lobbies.process_lobby(lobby)

        matches.handle_server_status(dict(SERVER), 'RUNNING')

        probe.sidecar.enable_whitelist.assert_called_once()
        assert probe.sidecar.add_whitelist_player.call_count == 4

    def test_unknown_server(self, services):
        """Callbacks for unknown servers are not found."""
        _, matches = services
        with pytest.raises(NotFoundError):
            matches.handle_server_status({'_id': 'nope'}, 'IDLE')

    def test_unknown_status(self, distributed, services):
        """Unknown statuses are invalid."""
        _, matches = services
        with pytest.raises(ValidationError):
            matches.handle_server_status(dict(SERVER), 'EXPLODED')


class TestMonitorMatch:
    """Tests for the polling loop."""

    def test_players_connected(self, distributed, services, probe):
        """Enough connected players moves to WAITING_TO_START."""
        _, matches = services
        _, match = distributed
        advance(matches, match, MatchStatus.WAITING_FOR_PLAYERS)
        probe.query_players.return_value = 4

        matches.monitor_match(match.match_id)
        assert match.status == MatchStatus.WAITING_TO_START.value
        probe.query_players.assert_called_once_with('10.0.0.5', 27015, 'tf2')

    def test_not_enough_players(self, distributed, services, probe):
        """Fewer players keeps waiting."""
        _, matches = services
        _, match = distributed
        advance(matches, match, MatchStatus.WAITING_FOR_PLAYERS)
        probe.query_players.return_value = 3

        matches.monitor_match(match.match_id)
        assert match.status == MatchStatus.WAITING_FOR_PLAYERS.value

    def test_goes_live(self, distributed, services, probe):
        """An in-progress sidecar match goes LIVE."""
        _, matches = services
        _, match = distributed
        advance(matches, match, MatchStatus.WAITING_TO_START)
        probe.sidecar.get_status.return_value = {'matches': [{'status': 'LIVE'}]}

        matches.monitor_match(match.match_id)
        assert match.status == MatchStatus.LIVE.value

    def test_ended_starts_result_fetch(self, distributed, services, probe, scheduler):
        """An ended sidecar match waits to close and fetches results."""
        _, matches = services
        _, match = distributed
        advance(matches, match, MatchStatus.LIVE)
        probe.sidecar.get_status.return_value = {'matches': [{'status': 'ENDED'}]}

        matches.monitor_match(match.match_id)
        assert match.status == MatchStatus.WAITING_TO_CLOSE.value
        assert scheduler.pending((RESULT_FETCH, match.match_id))

    def test_ended_before_seen_live(self, distributed, services, probe, scheduler):
        """A match that ended between sweeps still reaches WAITING_TO_CLOSE."""
        _, matches = services
        _, match = distributed
        advance(matches, match, MatchStatus.WAITING_TO_START)
        probe.sidecar.get_status.return_value = {'matches': [{'status': 'ENDED'}]}

        matches.monitor_match(match.match_id)
        assert match.status == MatchStatus.WAITING_TO_CLOSE.value
        assert scheduler.pending((RESULT_FETCH, match.match_id))

    def test_probe_error_logged(self, distributed, services, probe):
        """Probe failures leave the match for the next sweep."""
        _, matches = services
        _, match = distributed
        advance(matches, match, MatchStatus.WAITING_FOR_PLAYERS)
        probe.query_players.side_effect = ProbeError("timeout")

        matches.monitor_match(match.match_id)
        assert match.status == MatchStatus.WAITING_FOR_PLAYERS.value


class TestResultFetch:
    """Tests for result collection."""

    @pytest.fixture
    def closing(self, distributed, services):
        _, matches = services
        lobby, match = distributed
        advance(matches, match, MatchStatus.LIVE)
        matches._transition(match, 'end')
        matches.begin_result_fetch(match)
        return lobby, match

    def test_results_stored(self, closing, probe, scheduler, fleet):
        """Found results are stored and the match finishes."""
        _, match = closing
        probe.sidecar.get_status.return_value = {'matches': [{
            'status': 'ENDED', 'logUrl': 'http://logs/1', 'demoUrl': 'http://demos/1', 'score': {'red': 3, 'blu': 1},
        }]}

        scheduler.run((RESULT_FETCH, match.match_id))

        assert match.result == {'log_url': 'http://logs/1', 'demo_url': 'http://demos/1', 'score': {'red': 3, 'blu': 1}}
        assert match.status == MatchStatus.FINISHED.value
        fleet.delete_server.assert_called_once_with('srv-1')

    def test_retries_exhausted(self, app, closing, probe, scheduler, fleet):
        """After ten failed attempts teardown happens and the match finishes empty."""
        lobby, match = closing
        probe.sidecar.get_status.side_effect = ProbeError("unreachable")

        attempts = 0
        while scheduler.pending((RESULT_FETCH, match.match_id)):
            if attempts:
                assert scheduler.delay((RESULT_FETCH, match.match_id)) == app.config['RESULT_FETCH_INTERVAL']
            scheduler.run((RESULT_FETCH, match.match_id))
            attempts += 1

        assert attempts == 10
        assert probe.sidecar.get_status.call_count == 10
        fleet.delete_server.assert_called_once_with('srv-1')
        assert match.status == MatchStatus.FINISHED.value
        assert match.result == {}
        assert lobby.status == LobbyStatus.CLOSED.value

    def test_teardown_failure_still_finishes(self, closing, probe, scheduler, fleet):
        """A failing teardown is logged and the match still finishes."""
        _, match = closing
        probe.sidecar.get_status.return_value = {'matches': [{'status': 'ENDED', 'logUrl': 'http://logs/1'}]}
        fleet.delete_server.side_effect = ProvisioningError("gone")

        scheduler.run((RESULT_FETCH, match.match_id))
        assert match.status == MatchStatus.FINISHED.value


class TestClose:
    """Tests for closing matches."""

    def test_close_tears_down_and_closes_lobby(self, distributed, services, sample_client, fleet, probe):
        """Closing a match removes its server and closes the lobby."""
        _, matches = services
        lobby, match = distributed

        matches.close(sample_client, match.match_id)

        assert match.status == MatchStatus.CLOSED.value
        assert lobby.status == LobbyStatus.CLOSED.value
        probe.sidecar.kick_all.assert_called_once()
        fleet.delete_server.assert_called_once_with('srv-1')

    def test_close_terminal_match(self, distributed, services, sample_client):
        """Terminal matches cannot be closed."""
        _, matches = services
        _, match = distributed
        matches.close(sample_client, match.match_id)

        with pytest.raises(StateConflictError):
            matches.close(sample_client, match.match_id)
