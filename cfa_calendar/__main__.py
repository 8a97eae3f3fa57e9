from cfa_calendar.main import main

raise SystemExit(main())
