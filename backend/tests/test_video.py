from datetime import timedelta

from emdr_api.utils.dates import isoformat, utcnow


def _session(client, api_user):
    student, s_headers = api_user('STUDENT')
    consultant, c_headers = api_user('CONSULTANT')
    start = isoformat(utcnow() + timedelta(days=2))
    r = client.post('/sessions', json={'consultantId': consultant['id'], 'scheduledStart': start}, headers=s_headers)
    assert r.status_code == 201
    return r.json()['id'], s_headers, c_headers


def test_room_lifecycle(client, api_user):
    session_id, s_headers, c_headers = _session(client, api_user)
    r = client.post('/video/rooms', json={'sessionId': session_id, 'quality': '1080p'}, headers=c_headers)
    assert r.status_code == 201
    room = r.json()
    assert room['roomId'].startswith(f'room_{session_id}_')
    assert room['qualitySettings']['video'] == '1080p'
    assert room['status'] == 'active' and room['currentParticipants'] == 0
    room_id = room['roomId']

    joined = client.post(f'/video/rooms/{room_id}/join', json={}, headers=s_headers).json()
    assert joined['participant']['role'] == 'student'
    assert joined['room']['currentParticipants'] == 1
    # joining moves the session along
    assert client.get(f'/sessions/{session_id}', headers=s_headers).json()['status'] == 'IN_PROGRESS'

    # re-joining keeps a single presence
    again = client.post(f'/video/rooms/{room_id}/join', headers=s_headers).json()
    assert again['room']['currentParticipants'] == 1
    assert client.post(f'/video/rooms/{room_id}/join', headers=c_headers).json()['room']['currentParticipants'] == 2

    _, admin_headers = api_user('ADMIN')
    r = client.post(f'/video/rooms/{room_id}/join', headers=admin_headers)
    assert r.status_code == 409
    assert r.json()['code'] == 'CONFLICT'

    assert client.post(f'/video/rooms/{room_id}/leave', headers=s_headers).json()['status'] == 'active'
    assert client.post(f'/video/rooms/{room_id}/leave', headers=s_headers).status_code == 404
    ended = client.post(f'/video/rooms/{room_id}/leave', headers=c_headers).json()
    assert ended['status'] == 'ended' and ended['endTime'] is not None
    assert client.post(f'/video/rooms/{room_id}/join', headers=s_headers).status_code == 409

    latest = client.get(f'/video/sessions/{session_id}', headers=s_headers).json()
    assert latest['roomId'] == room_id


def test_room_validation_and_access(client, api_user):
    session_id, s_headers, _ = _session(client, api_user)
    _, outsider = api_user('STUDENT')
    assert client.post('/video/rooms', json={'sessionId': session_id, 'quality': '4k'}, headers=s_headers).status_code == 400
    assert client.post('/video/rooms', json={'sessionId': session_id, 'maxParticipants': 1}, headers=s_headers).status_code == 400
    assert client.post('/video/rooms', json={'sessionId': 4040}, headers=s_headers).status_code == 404
    assert client.post('/video/rooms', json={'sessionId': session_id}, headers=outsider).status_code == 403

    assert client.get(f'/video/sessions/{session_id}', headers=s_headers).status_code == 404
    room_id = client.post('/video/rooms', json={'sessionId': session_id}, headers=s_headers).json()['roomId']
    assert client.post(f'/video/rooms/{room_id}/join', headers=outsider).status_code == 403
    assert client.get(f'/video/sessions/{session_id}', headers=outsider).status_code == 403
    assert client.post('/video/rooms/room_missing/join', headers=s_headers).status_code == 404


def test_session_analytics(client, api_user):
    session_id, s_headers, c_headers = _session(client, api_user)
    _, outsider = api_user('STUDENT')
    empty = client.get(f'/video/sessions/{session_id}/analytics', headers=s_headers).json()
    assert empty['roomCount'] == 0 and empty['participantActivity'] == []
    assert empty['scheduledDuration'] == 60.0 and empty['actualDuration'] is None

    room_id = client.post('/video/rooms', json={'sessionId': session_id, 'quality': '480p'}, headers=c_headers).json()['roomId']
    client.post(f'/video/rooms/{room_id}/join', headers=s_headers)
    client.post(f'/video/rooms/{room_id}/join', headers=c_headers)
    client.post(f'/video/rooms/{room_id}/leave', headers=s_headers)
    client.post(f'/video/rooms/{room_id}/join', headers=s_headers)

    r = client.get(f'/video/sessions/{session_id}/analytics', headers=c_headers)
    assert r.status_code == 200
    stats = r.json()
    assert stats['roomCount'] == 1 and stats['latestRoomId'] == room_id
    assert stats['quality'] == '480p'
    joins = {a['role']: a['joins'] for a in stats['participantActivity']}
    assert joins == {'student': 2, 'consultant': 1}
    assert all(a['totalMinutes'] >= 0 for a in stats['participantActivity'])

    assert client.get(f'/video/sessions/{session_id}/analytics', headers=outsider).status_code == 403
    assert client.get('/video/sessions/4040/analytics', headers=s_headers).status_code == 404
