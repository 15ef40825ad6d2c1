from watchtower.main import main

raise SystemExit(main())
